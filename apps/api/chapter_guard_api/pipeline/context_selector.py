"""
Greedy top-k relevance filter over the story bible.

Deterministic for identical inputs: scores are integer-ish sums and ties keep
the original order.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Sequence

from ..config import ContextOptions
from ..util import fold_text


logger = logging.getLogger(__name__)

NAME_WEIGHT = 60.0
ALIAS_WEIGHT = 40.0
QUERY_TOKEN_WEIGHT = 4.0
RECENT_TOKEN_WEIGHT = 6.0
MIN_TOKEN_LEN = 3

_ALIAS_SPLIT_RE = re.compile(r"[,\n;|]+")

_DESCRIPTIVE_FIELDS = ("role", "traits", "goal", "description", "atmosphere", "notes")

STOPWORDS = frozenset(
    """
    que los las del por para con una uno unos unas como mas pero sus ese esa eso este esta esto
    estos estas ese esos esas aqui alli ahi donde cuando quien cual cuales muy sin sobre entre
    hasta desde hacia tambien solo fue era son ser hay han había habia tiene tenia ella ellos ellas
    nos les lo le se su mi tu yo al el la de en y a o u no si ya
    the and for with that this these those from into onto over under about was were are is been
    being have has had not but you your they them their his her its our out all any can will would
    should could what which who whom when where why how then than there here
    """.split()
)


def _field(entity: Any, name: str) -> str:
    if isinstance(entity, dict):
        value = entity.get(name)
    else:
        value = getattr(entity, name, None)
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value if v)
    return value if isinstance(value, str) else ""


def split_aliases(value: str | Sequence[str] | None) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        parts = _ALIAS_SPLIT_RE.split(value)
    else:
        parts = [str(v) for v in value]
    return [p.strip() for p in parts if p and p.strip()]


def tokenize(value: str | None) -> set[str]:
    return {t for t in fold_text(value).split(" ") if len(t) >= MIN_TOKEN_LEN and t not in STOPWORDS}


def contains_term(folded_haystack: str, term: str) -> bool:
    """Whole-term match on folded text ("ana" does not match "mañana")."""
    needle = fold_text(term)
    if not needle or not folded_haystack:
        return False
    return f" {needle} " in f" {folded_haystack} "


def score_entity(
    entity: Any,
    folded_query: str,
    query_tokens: set[str],
    folded_recent: str,
    recent_tokens: set[str],
    recency_weight: float,
) -> float:
    name = _field(entity, "name").strip()
    aliases = split_aliases(_field(entity, "aliases"))

    score = 0.0
    if name and contains_term(folded_query, name):
        score += NAME_WEIGHT
    elif any(contains_term(folded_query, a) for a in aliases):
        score += ALIAS_WEIGHT

    if name and contains_term(folded_recent, name):
        score += NAME_WEIGHT * recency_weight
    elif any(contains_term(folded_recent, a) for a in aliases):
        score += ALIAS_WEIGHT * recency_weight

    blob = " ".join([name, *aliases, *(_field(entity, f) for f in _DESCRIPTIVE_FIELDS)])
    entity_tokens = tokenize(blob)
    if entity_tokens:
        score += QUERY_TOKEN_WEIGHT * len(entity_tokens & query_tokens)
        score += RECENT_TOKEN_WEIGHT * recency_weight * len(entity_tokens & recent_tokens)
    return score


def select_entities(
    entities: Sequence[Any],
    query_text: str | None,
    recent_text: str | None,
    max_items: int,
    recency_weight: float = 1.0,
) -> list[Any]:
    """Top `max_items` entities for the query, weighted toward recent text."""
    items = list(entities or [])
    cap = max(1, int(max_items))
    if len(items) <= cap:
        return items

    weight = max(0.0, min(2.0, float(recency_weight)))
    folded_query = fold_text(query_text)
    folded_recent = fold_text(recent_text)
    query_tokens = tokenize(query_text)
    recent_tokens = tokenize(recent_text)

    scored = [
        (score_entity(e, folded_query, query_tokens, folded_recent, recent_tokens, weight), idx, e)
        for idx, e in enumerate(items)
    ]
    if all(s <= 0 for s, _, _ in scored):
        logger.debug("no entity matched the query; keeping the first %s of %s", cap, len(items))
        return items[:cap]

    scored.sort(key=lambda row: (-row[0], row[1]))
    return [e for _, _, e in scored[:cap]]


@dataclass
class StoryContext:
    characters: list[Any] = field(default_factory=list)
    locations: list[Any] = field(default_factory=list)
    continuity_rules: str = ""


def select_story_context(
    characters: Sequence[Any],
    locations: Sequence[Any],
    query_text: str | None,
    recent_text: str | None,
    options: ContextOptions | None = None,
    continuity_rules: str = "",
) -> StoryContext:
    opts = options or ContextOptions()
    chosen_chars = select_entities(characters, query_text, recent_text, opts.max_characters, opts.recency_weight)
    chosen_locs = select_entities(locations, query_text, recent_text, opts.max_locations, opts.recency_weight)
    logger.debug(
        "story context: %s/%s characters, %s/%s locations",
        len(chosen_chars),
        len(characters or []),
        len(chosen_locs),
        len(locations or []),
    )
    return StoryContext(characters=chosen_chars, locations=chosen_locs, continuity_rules=continuity_rules or "")


def format_story_context(ctx: StoryContext) -> str:
    """Render the selected bible as a prompt block."""
    lines: list[str] = []
    if ctx.characters:
        lines.append("Personajes relevantes:")
        for c in ctx.characters:
            parts = [_field(c, "name").strip() or "(sin nombre)"]
            aliases = split_aliases(_field(c, "aliases"))
            if aliases:
                parts.append(f"alias: {', '.join(aliases)}")
            for label, key in (("rol", "role"), ("rasgos", "traits"), ("objetivo", "goal"), ("notas", "notes")):
                v = _field(c, key).strip()
                if v:
                    parts.append(f"{label}: {v}")
            lines.append("- " + " | ".join(parts))
    if ctx.locations:
        lines.append("Lugares relevantes:")
        for loc in ctx.locations:
            parts = [_field(loc, "name").strip() or "(sin nombre)"]
            aliases = split_aliases(_field(loc, "aliases"))
            if aliases:
                parts.append(f"alias: {', '.join(aliases)}")
            for label, key in (("descripcion", "description"), ("atmosfera", "atmosphere"), ("notas", "notes")):
                v = _field(loc, key).strip()
                if v:
                    parts.append(f"{label}: {v}")
            lines.append("- " + " | ".join(parts))
    rules = ctx.continuity_rules.strip()
    if rules:
        lines.append("Reglas de continuidad:")
        lines.append(rules)
    return "\n".join(lines)
