from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from ..errors import ChapterNotFound
from ..models import Chapter, ChapterSnapshot, clone_chapter
from ..util import now_utc


logger = logging.getLogger(__name__)


class ChapterStore(Protocol):
    async def get_chapter(self, chapter_id: str) -> Chapter | None: ...

    async def save_chapter(self, chapter: Chapter) -> Chapter: ...

    async def save_snapshot(self, chapter: Chapter, reason: str) -> ChapterSnapshot: ...

    async def list_snapshots(self, chapter_id: str) -> list[ChapterSnapshot]: ...


@dataclass
class LedgerEntry:
    # None means "past the newest snapshot" (no undo applied yet).
    cursor: int | None = None
    redo_stack: list[Chapter] = field(default_factory=list)


class SnapshotLedger:
    """
    Snapshot history plus per-chapter undo/redo state.

    Every chapter write that should invalidate redo goes through `write` or
    `record_snapshot`; nothing else touches the entries.
    """

    def __init__(self, store: ChapterStore) -> None:
        self.store = store
        self._entries: dict[str, LedgerEntry] = {}

    def _entry(self, chapter_id: str) -> LedgerEntry:
        entry = self._entries.get(chapter_id)
        if entry is None:
            entry = LedgerEntry()
            self._entries[chapter_id] = entry
        return entry

    def _invalidate(self, chapter_id: str) -> None:
        entry = self._entries.get(chapter_id)
        if entry is not None:
            entry.cursor = None
            entry.redo_stack.clear()

    def cursor(self, chapter_id: str) -> int | None:
        entry = self._entries.get(chapter_id)
        return entry.cursor if entry else None

    def redo_depth(self, chapter_id: str) -> int:
        entry = self._entries.get(chapter_id)
        return len(entry.redo_stack) if entry else 0

    async def record_snapshot(self, chapter: Chapter, reason: str) -> ChapterSnapshot:
        snap = await self.store.save_snapshot(chapter, reason)
        self._invalidate(chapter.id)
        logger.debug("snapshot v%s for chapter %s (%s)", snap.version, chapter.id, reason)
        return snap

    async def write(self, chapter: Chapter) -> Chapter:
        """Forward edit: persist and drop any redo history for the chapter."""
        saved = await self.store.save_chapter(chapter)
        self._invalidate(chapter.id)
        return saved

    async def undo(self, chapter_id: str) -> Chapter | None:
        snaps = await self.store.list_snapshots(chapter_id)
        entry = self._entry(chapter_id)
        idx = (entry.cursor if entry.cursor is not None else len(snaps)) - 1
        if idx < 0 or idx >= len(snaps):
            return None

        current = await self.store.get_chapter(chapter_id)
        if current is None:
            raise ChapterNotFound(chapter_id)

        data = snaps[idx].chapter or {}
        restored = clone_chapter(
            current,
            title=data.get("title", current.title),
            content=data.get("content", current.content),
            length_preset=data.get("length_preset", current.length_preset),
            updated_at=now_utc(),
        )
        saved = await self.store.save_chapter(restored)
        entry.redo_stack.append(clone_chapter(current))
        entry.cursor = idx
        logger.info("undo chapter %s to snapshot v%s", chapter_id, snaps[idx].version)
        return saved

    async def redo(self, chapter_id: str) -> Chapter | None:
        entry = self._entries.get(chapter_id)
        if entry is None or not entry.redo_stack:
            return None

        snaps = await self.store.list_snapshots(chapter_id)
        target = entry.redo_stack[-1]
        saved = await self.store.save_chapter(clone_chapter(target, updated_at=now_utc()))
        entry.redo_stack.pop()
        nxt = (entry.cursor if entry.cursor is not None else len(snaps)) + 1
        entry.cursor = nxt if nxt < len(snaps) else None
        logger.info("redo chapter %s", chapter_id)
        return saved
