from __future__ import annotations

from sqlalchemy import func
from sqlmodel import select

from .db import ENGINE, get_session
from .models import Chapter, ChapterSnapshot, chapter_to_json, clone_chapter
from .util import now_utc


class SqlChapterStore:
    """Chapter/snapshot persistence for one book, backed by SQLModel."""

    def __init__(self, book_id: str, engine=None) -> None:
        self.book_id = book_id
        self.engine = engine or ENGINE

    async def get_chapter(self, chapter_id: str) -> Chapter | None:
        with get_session(self.engine) as session:
            ch = session.get(Chapter, chapter_id)
            if not ch or ch.book_id != self.book_id:
                return None
            return ch

    async def save_chapter(self, chapter: Chapter) -> Chapter:
        with get_session(self.engine) as session:
            row = session.get(Chapter, chapter.id)
            if row is None:
                row = clone_chapter(chapter)
            else:
                row.title = chapter.title
                row.content = chapter.content
                row.length_preset = chapter.length_preset
                row.chapter_index = chapter.chapter_index
                row.updated_at = chapter.updated_at or now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    async def save_snapshot(self, chapter: Chapter, reason: str) -> ChapterSnapshot:
        with get_session(self.engine) as session:
            current = session.exec(
                select(func.max(ChapterSnapshot.version)).where(ChapterSnapshot.chapter_id == chapter.id)
            ).one()
            snap = ChapterSnapshot(
                book_id=self.book_id,
                chapter_id=chapter.id,
                version=int(current or 0) + 1,
                reason=reason,
                chapter=chapter_to_json(chapter),
            )
            session.add(snap)
            session.commit()
            session.refresh(snap)
            return snap

    async def list_snapshots(self, chapter_id: str) -> list[ChapterSnapshot]:
        with get_session(self.engine) as session:
            return list(
                session.exec(
                    select(ChapterSnapshot)
                    .where(ChapterSnapshot.chapter_id == chapter_id)
                    .order_by(ChapterSnapshot.version.asc())
                )
            )
