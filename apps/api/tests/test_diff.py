from __future__ import annotations

from chapter_guard_api.diff import DiffSummary, diff_text_blocks, split_blocks, summarize_diff


def test_split_blocks_normalizes_whitespace() -> None:
    assert split_blocks("  Uno\n dos.\r\n\r\n\n Tres.  ") == ["Uno dos.", "Tres."]
    assert split_blocks("   ") == []


def test_paragraph_diff_counts_changed_regions() -> None:
    ops = diff_text_blocks("Uno.\n\nDos.\n\nTres.", "Uno.\n\nDos cambiado.\n\nTres.\n\nCuatro.")
    assert [(op.kind, op.value) for op in ops] == [
        ("equal", "Uno."),
        ("delete", "Dos."),
        ("insert", "Dos cambiado."),
        ("equal", "Tres."),
        ("insert", "Cuatro."),
    ]
    assert summarize_diff(ops) == DiffSummary(equal=2, insert=2, delete=1)


def test_adjacent_inserts_are_merged() -> None:
    ops = diff_text_blocks("", "A.\n\nB.")
    assert [(op.kind, op.value) for op in ops] == [("insert", "A.\n\nB.")]
    assert summarize_diff(diff_text_blocks("Igual.", "Igual.")).to_json() == {"equal": 1, "insert": 0, "delete": 0}
