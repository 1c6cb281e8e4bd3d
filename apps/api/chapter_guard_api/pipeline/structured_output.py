"""
Parsers for the structured replies the pipeline asks the model for.

Continuation rounds answer with:

    ESTADO: DONE|CONTINUE
    RESUMEN: <one line>
    TEXTO:
    <chapter text>

Continuity checks use the same layout with PASS|FAIL and RAZON. A reply
without a status marker is `Malformed`; callers map it to the safe default
(CONTINUE / PASS) and treat the whole reply as the text block.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Union

from ..util import normalize_ai_output


@dataclass(frozen=True)
class Parsed:
    status: str
    summary: str
    text: str


@dataclass(frozen=True)
class Malformed:
    raw_text: str


ParseResult = Union[Parsed, Malformed]


_CONTINUATION_STATUS_RE = re.compile(r"ESTADO:\s*(DONE|CONTINUE)\b", re.IGNORECASE)
_CONTINUITY_STATUS_RE = re.compile(r"ESTADO:\s*(PASS|FAIL)\b", re.IGNORECASE)
_SUMMARY_RE = re.compile(r"RESUMEN:[ \t]*(.*)", re.IGNORECASE)
_REASON_RE = re.compile(r"RAZ[OÓ]N:[ \t]*(.*)", re.IGNORECASE)
_TEXT_RE = re.compile(r"TEXTO:\s*([\s\S]*)$", re.IGNORECASE)
_MARKER_LINE_RE = re.compile(r"^\s*(ESTADO|RESUMEN|RAZ[OÓ]N):.*$", re.IGNORECASE | re.MULTILINE)


def _parse(raw: str, status_re: re.Pattern[str], note_re: re.Pattern[str]) -> ParseResult:
    normalized = normalize_ai_output(raw)
    status_match = status_re.search(normalized)
    if not status_match:
        return Malformed(raw_text=normalized)

    note_match = note_re.search(normalized)
    note = note_match.group(1).strip() if note_match else ""

    text_match = _TEXT_RE.search(normalized)
    if text_match:
        text = text_match.group(1).strip()
    else:
        # Status present but no TEXTO block: whatever is left is the text.
        text = _MARKER_LINE_RE.sub("", normalized).strip()
    return Parsed(status=status_match.group(1).upper(), summary=note, text=text)


def parse_continuation(raw: str) -> ParseResult:
    return _parse(raw, _CONTINUATION_STATUS_RE, _SUMMARY_RE)


def parse_continuity(raw: str) -> ParseResult:
    return _parse(raw, _CONTINUITY_STATUS_RE, _REASON_RE)


def continuation_fields(result: ParseResult) -> tuple[str, str, str]:
    """(status, summary, text) with Malformed mapped to CONTINUE."""
    if isinstance(result, Parsed):
        return result.status, result.summary, result.text or ""
    return "CONTINUE", "", result.raw_text


def continuity_fields(result: ParseResult) -> tuple[str, str, str]:
    """(verdict, reason, text) with Malformed mapped to PASS."""
    if isinstance(result, Parsed):
        return result.status, result.summary, result.text or ""
    return "PASS", "", result.raw_text


# ---- change summary ----

_SUMMARY_SPLIT_RE = re.compile(
    r"^[ \t]*(?:#+[ \t]*|\*\*)?(?:resumen de cambios|summary of changes)(?:\*\*)?[ \t]*:?(?:\*\*)?[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.*\S)\s*$")


@dataclass(frozen=True)
class SplitOutput:
    clean_text: str
    summary_text: str = ""
    summary_bullets: list[str] = field(default_factory=list)


def split_summary(text: str) -> SplitOutput:
    """Separate the chapter body from a trailing change-summary block."""
    normalized = (text or "").strip()
    matches = list(_SUMMARY_SPLIT_RE.finditer(normalized))
    if not matches:
        return SplitOutput(clean_text=normalized)

    marker = matches[-1]
    clean = normalized[: marker.start()].strip()
    summary = normalized[marker.end() :].strip()
    bullets = []
    for line in summary.splitlines():
        m = _BULLET_RE.match(line)
        if m:
            bullets.append(m.group(1).strip())
    return SplitOutput(clean_text=clean, summary_text=summary, summary_bullets=bullets)
