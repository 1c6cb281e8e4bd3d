"""
Detect new characters and locations in chapter text.

A capitalised-name heuristic, not NER: candidates are scored by frequency and
by nearby context words ("en", "puerto", "doctora", ...), then classified as
character or location. Names already in the story bible (or aliases, or
overlapping names) are skipped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .pipeline.context_selector import split_aliases
from .util import fold_text

_UPPER = "A-ZÁÉÍÓÚÑ"
_LOWER = "a-záéíóúñ"
ENTITY_RE = re.compile(
    rf"\b([{_UPPER}][{_LOWER}]+(?:\s+(?:de|del|la|las|los|y|e)\s+[{_UPPER}][{_LOWER}]+|\s+[{_UPPER}][{_LOWER}]+){{0,2}})\b"
)
WORD_RE = re.compile(r"[A-Za-zÁÉÍÓÚÜÑáéíóúüñ]+")

CONNECTOR_WORDS = frozenset({"de", "del", "la", "las", "los", "y", "e"})
COMMON_NON_ENTITY_WORDS = frozenset(
    """
    abril agosto ahi aqui ayer capitulo diciembre el ella ellos enero esta este febrero hoy julio junio
    la las lunes martes marzo mayo miercoles jueves viernes noviembre octubre para pero por sabado
    domingo septiembre si sin texto tu un una yo
    """.split()
)
LOCATION_CONTEXT_WORDS = frozenset(
    """
    en desde hasta hacia sobre bajo junto frente dentro fuera ciudad pueblo barrio calle avenida plaza
    puerto isla bosque montana monte palacio castillo faro costa bahia mar rio bar cafe hotel hospital
    escuela universidad estacion
    """.split()
)
LOCATION_NAME_WORDS = frozenset(
    """
    avenida bahia bar barrio bosque cafe calle campamento castillo costa estacion faro hospital hotel
    isla mar mercado monte montana palacio parque plaza puente puerto rio teatro torre universidad
    """.split()
)
CHARACTER_CONTEXT_WORDS = frozenset(
    """
    don dona senor senora sr sra doctor doctora capitan comisario reina rey princesa principe agente
    teniente hermano hermana madre padre hija hijo
    """.split()
)

CONTEXT_WINDOW = 50
DEFAULT_MAX_NEW = 3


@dataclass
class _Candidate:
    name: str
    key: str
    words: list[str]
    occurrences: int = 1
    location_hints: int = 0
    character_hints: int = 0
    location_keyword: bool = False

    @property
    def score(self) -> int:
        s = self.occurrences * 10 + self.location_hints * 6 + self.character_hints * 6
        if len(self.words) >= 2:
            s += 4
        if self.location_keyword:
            s += 5
        return s


@dataclass(frozen=True)
class DetectedEntity:
    kind: str  # character|location
    name: str
    notes: str


@dataclass
class SyncResult:
    characters: list[DetectedEntity] = field(default_factory=list)
    locations: list[DetectedEntity] = field(default_factory=list)

    @property
    def added(self) -> list[DetectedEntity]:
        return [*self.characters, *self.locations]


def _significant_words(name: str) -> list[str]:
    return [w for w in WORD_RE.findall(name) if fold_text(w) not in CONNECTOR_WORDS]


def _ignored(name: str) -> bool:
    words = [fold_text(w) for w in _significant_words(name)]
    if not words or len(words) > 4:
        return True
    if any(len(w) < 2 for w in words):
        return True
    return all(w in COMMON_NON_ENTITY_WORDS for w in words)


def _context_words(text: str, start: int, end: int) -> list[str]:
    around = f"{text[max(0, start - CONTEXT_WINDOW):start]} {text[end:end + CONTEXT_WINDOW]}"
    return [fold_text(w) for w in WORD_RE.findall(around)]


def _candidates(text: str) -> list[_Candidate]:
    found: dict[str, _Candidate] = {}
    for m in ENTITY_RE.finditer(text):
        raw = re.sub(r"\s+", " ", m.group(1)).strip()
        if not raw or _ignored(raw):
            continue
        key = fold_text(raw)
        words = _significant_words(raw)
        context = _context_words(text, m.start(1), m.start(1) + len(raw))
        loc_hints = sum(1 for w in context if w in LOCATION_CONTEXT_WORDS)
        char_hints = sum(1 for w in context if w in CHARACTER_CONTEXT_WORDS)
        keyword = any(fold_text(w) in LOCATION_NAME_WORDS for w in words)

        existing = found.get(key)
        if existing is not None:
            existing.occurrences += 1
            existing.location_hints += loc_hints
            existing.character_hints += char_hints
            existing.location_keyword = existing.location_keyword or keyword
        else:
            found[key] = _Candidate(raw, key, words, 1, loc_hints, char_hints, keyword)
    return list(found.values())


def _classify(c: _Candidate) -> Optional[str]:
    location_signal = c.location_keyword or c.location_hints > 0
    character_signal = c.character_hints > 0
    if not (c.occurrences >= 2 or location_signal or character_signal or len(c.words) >= 2):
        return None
    if location_signal and not character_signal:
        return "location"
    if character_signal and not location_signal:
        return "character"
    return "location" if c.location_keyword else "character"


def _known(key: str, known: list[str]) -> bool:
    if not key:
        return True
    for k in known:
        if k == key:
            return True
        if len(k) >= 3 and (k in key or key in k):
            return True
    return False


def _field(entity: Any, name: str) -> str:
    value = entity.get(name) if isinstance(entity, dict) else getattr(entity, name, "")
    return value if isinstance(value, str) else ""


def detect_new_entities(
    chapter_text: str,
    chapter_title: str,
    existing: Iterable[Any],
    *,
    max_characters: int = DEFAULT_MAX_NEW,
    max_locations: int = DEFAULT_MAX_NEW,
) -> SyncResult:
    """Story-bible entries worth adding for this chapter, best-scored first."""
    text = re.sub(r"\s+", " ", chapter_text or "").strip()
    result = SyncResult()
    if not text:
        return result

    known: list[str] = []
    for entity in existing:
        for name in [_field(entity, "name"), *split_aliases(_field(entity, "aliases"))]:
            key = fold_text(name)
            if key:
                known.append(key)

    for c in sorted(_candidates(text), key=lambda c: -c.score):
        if _known(c.key, known):
            continue
        kind = _classify(c)
        if kind == "location" and len(result.locations) < max(0, max_locations):
            result.locations.append(
                DetectedEntity(
                    "location", c.name, f"Detectado automaticamente en {chapter_title}. Revisar detalles del lugar."
                )
            )
            known.append(c.key)
        elif kind == "character" and len(result.characters) < max(0, max_characters):
            result.characters.append(
                DetectedEntity(
                    "character",
                    c.name,
                    f"Detectado automaticamente en {chapter_title}. Completar rol y continuidad.",
                )
            )
            known.append(c.key)
    return result
