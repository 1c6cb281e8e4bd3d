"""Paragraph-level before/after diff shown next to a pending review."""

from __future__ import annotations

import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Literal

DiffKind = Literal["equal", "insert", "delete"]


@dataclass
class DiffOp:
    kind: DiffKind
    value: str


@dataclass(frozen=True)
class DiffSummary:
    equal: int = 0
    insert: int = 0
    delete: int = 0

    def to_json(self) -> dict[str, int]:
        return {"equal": self.equal, "insert": self.insert, "delete": self.delete}


def split_blocks(text: str | None) -> list[str]:
    normalized = (text or "").replace("\r\n", "\n").strip()
    if not normalized:
        return []
    blocks = (re.sub(r"\s+", " ", chunk).strip() for chunk in re.split(r"\n{2,}", normalized))
    return [b for b in blocks if b]


def diff_text_blocks(before: str | None, after: str | None) -> list[DiffOp]:
    """
    Compare two texts paragraph by paragraph.

    Consecutive operations of the same kind are merged into one, so the
    summary counts changed regions rather than paragraphs.
    """

    left = split_blocks(before)
    right = split_blocks(after)
    ops: list[DiffOp] = []

    def push(kind: DiffKind, values: list[str]) -> None:
        for value in values:
            if ops and ops[-1].kind == kind:
                ops[-1].value = f"{ops[-1].value}\n\n{value}"
            else:
                ops.append(DiffOp(kind, value))

    matcher = SequenceMatcher(a=left, b=right, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            push("equal", left[i1:i2])
        else:
            push("delete", left[i1:i2])
            push("insert", right[j1:j2])
    return ops


def summarize_diff(ops: list[DiffOp]) -> DiffSummary:
    counts = {"equal": 0, "insert": 0, "delete": 0}
    for op in ops:
        counts[op.kind] += 1
    return DiffSummary(**counts)
