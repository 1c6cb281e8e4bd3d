from __future__ import annotations

import re

from ..util import count_words, fold_text


SHORTEN_ACTION = "shorten-20"
EXPANSION_ACTIONS = frozenset({"expand-examples", "draft-from-idea"})

MIN_TARGET_WORDS = 30
MAX_TARGET_WORDS = 50_000

# Matched against folded text (lowercase, no accents).
_EXPAND_INTENT_RE = re.compile(
    r"\b("
    r"expand\w*|extend\w*|lengthen\w*|longer|elaborat\w*|develop\w*|flesh out|add more|more detail\w*"
    r"|expandi\w*|expande\w*|amplia\w*|amplie\w*|alarga\w*|extiend\w*|extende\w*|desarroll\w*"
    r"|profundiz\w*|mas largo|mas extenso|mas detalle\w*|agrega\w* mas|anadi\w* mas|sumale"
    r")\b"
)
_SHORTEN_INTENT_RE = re.compile(
    r"\b("
    r"shorten\w*|shorter|trim\w*|condens\w*|cut down|reduce\w*|summari[sz]e\w*|tighten\w*|more concise|concise"
    r"|acorta\w*|recorta\w*|reduci\w*|reduce\w*|resumi\w*|resume\w*|sintetiz\w*|condensa\w*|mas corto"
    r"|mas breve|compacta\w*"
    r")\b"
)
_NUMERIC_TARGET_RE = re.compile(r"(\d[\d.,]*)\s*(palabras?|words?)\b")


def has_expand_intent(instruction: str | None) -> bool:
    return bool(_EXPAND_INTENT_RE.search(fold_text(instruction)))


def has_shorten_intent(instruction: str | None) -> bool:
    return bool(_SHORTEN_INTENT_RE.search(fold_text(instruction)))


def should_enforce_expansion(action_kind: str | None, instruction: str | None) -> bool:
    if action_kind == SHORTEN_ACTION:
        return False
    if action_kind in EXPANSION_ACTIONS:
        return True
    # Shorten wins when an instruction carries both intents.
    return has_expand_intent(instruction) and not has_shorten_intent(instruction)


def parse_target_words(instruction: str | None) -> int | None:
    """Explicit "N palabras"/"N words" target, if within the accepted range."""
    # fold_text drops separators, so parse the raw lowercase text.
    for m in _NUMERIC_TARGET_RE.finditer((instruction or "").lower()):
        digits = re.sub(r"[.,]", "", m.group(1))
        if not digits:
            continue
        value = int(digits)
        if MIN_TARGET_WORDS <= value <= MAX_TARGET_WORDS:
            return value
    return None


def resolve_minimum_words(instruction: str | None, original_text: str | None) -> int:
    """Floor for an expansion: never below the original's own length."""
    target = parse_target_words(instruction) or 0
    return max(target, count_words(original_text))
