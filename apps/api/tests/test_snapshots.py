from __future__ import annotations

import asyncio

from chapter_guard_api.models import clone_chapter
from chapter_guard_api.util import plain_text_to_html


def _edit(h, text: str, reason: str | None = "edit"):
    """Snapshot then write, the way every guarded mutation does."""

    async def run():
        current = await h.store.get_chapter(h.chapter.id)
        if reason:
            await h.session.ledger.record_snapshot(current, reason)
        return await h.session.ledger.write(clone_chapter(current, content=plain_text_to_html(text)))

    return asyncio.run(run())


def test_versions_are_strictly_increasing(make_harness) -> None:
    h = make_harness(text="v0")
    _edit(h, "v1")
    _edit(h, "v2")
    _edit(h, "v3")
    assert [s.version for s in h.store.snapshots] == [1, 2, 3]


def test_undo_walks_back_through_snapshots(make_harness) -> None:
    h = make_harness(text="v0")
    _edit(h, "v1")
    _edit(h, "v2")
    ledger = h.session.ledger

    first = asyncio.run(ledger.undo(h.chapter.id))
    assert first.plain_text == "v1"
    second = asyncio.run(ledger.undo(h.chapter.id))
    assert second.plain_text == "v0"
    assert asyncio.run(ledger.undo(h.chapter.id)) is None
    assert h.store.chapters[h.chapter.id].plain_text == "v0"


def test_undo_then_redo_restores_exact_content(make_harness) -> None:
    h = make_harness(text="v0")
    _edit(h, "Primera linea.\n\nSegunda & <tercera>.")
    ledger = h.session.ledger
    before = h.store.chapters[h.chapter.id].content

    asyncio.run(ledger.undo(h.chapter.id))
    assert h.store.chapters[h.chapter.id].content != before
    restored = asyncio.run(ledger.redo(h.chapter.id))
    assert restored.content == before
    assert h.store.chapters[h.chapter.id].content == before
    assert asyncio.run(ledger.redo(h.chapter.id)) is None


def test_multi_step_undo_redo_round_trip(make_harness) -> None:
    h = make_harness(text="v0")
    _edit(h, "v1")
    _edit(h, "v2")
    ledger = h.session.ledger
    asyncio.run(ledger.undo(h.chapter.id))
    asyncio.run(ledger.undo(h.chapter.id))
    assert asyncio.run(ledger.redo(h.chapter.id)).plain_text == "v1"
    assert asyncio.run(ledger.redo(h.chapter.id)).plain_text == "v2"
    assert ledger.cursor(h.chapter.id) is None


def test_edit_after_undo_clears_redo(make_harness) -> None:
    h = make_harness(text="v0")
    _edit(h, "v1")
    ledger = h.session.ledger
    asyncio.run(ledger.undo(h.chapter.id))
    assert ledger.redo_depth(h.chapter.id) == 1

    _edit(h, "manual", reason=None)
    assert ledger.redo_depth(h.chapter.id) == 0
    assert asyncio.run(ledger.redo(h.chapter.id)) is None
    assert h.store.chapters[h.chapter.id].plain_text == "manual"


def test_new_snapshot_after_undo_clears_redo(make_harness) -> None:
    h = make_harness(text="v0")
    _edit(h, "v1")
    ledger = h.session.ledger
    asyncio.run(ledger.undo(h.chapter.id))
    current = asyncio.run(h.store.get_chapter(h.chapter.id))
    asyncio.run(ledger.record_snapshot(current, "manual"))
    assert asyncio.run(ledger.redo(h.chapter.id)) is None


def test_redo_stacks_are_per_chapter(make_harness) -> None:
    h = make_harness(text="v0")
    _edit(h, "v1")
    other = clone_chapter(h.chapter, id="ch-2", content=plain_text_to_html("otro"))
    h.store.chapters[other.id] = other
    ledger = h.session.ledger

    asyncio.run(ledger.undo(h.chapter.id))
    asyncio.run(ledger.write(clone_chapter(other, content=plain_text_to_html("otro editado"))))
    assert ledger.redo_depth(h.chapter.id) == 1
    assert asyncio.run(ledger.redo(h.chapter.id)).plain_text == "v1"
