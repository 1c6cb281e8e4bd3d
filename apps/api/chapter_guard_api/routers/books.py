from __future__ import annotations

from fastapi import APIRouter, HTTPException
from sqlmodel import select

from ..db import get_session
from ..models import (
    Book,
    BookCreate,
    BookUpdate,
    Chapter,
    ChapterSnapshot,
    ChatMessage,
    Run,
    StoryEntity,
    TraceEvent,
)
from ..util import deep_merge, now_utc


router = APIRouter(prefix="/api/books", tags=["books"])


@router.get("")
def list_books() -> list[Book]:
    with get_session() as session:
        return list(session.exec(select(Book).order_by(Book.updated_at.desc())))


@router.post("")
def create_book(payload: BookCreate) -> Book:
    """New books start with one empty chapter; a book never has zero chapters."""
    with get_session() as session:
        b = Book(title=payload.title, author=payload.author)
        session.add(b)
        session.flush()
        session.add(Chapter(book_id=b.id, chapter_index=1, title="Capitulo 1"))
        session.commit()
        session.refresh(b)
        return b


@router.get("/{book_id}")
def get_book(book_id: str) -> Book:
    with get_session() as session:
        b = session.get(Book, book_id)
        if not b:
            raise HTTPException(status_code=404, detail="Book not found")
        return b


@router.patch("/{book_id}")
def update_book(book_id: str, payload: BookUpdate) -> Book:
    with get_session() as session:
        b = session.get(Book, book_id)
        if not b:
            raise HTTPException(status_code=404, detail="Book not found")

        if payload.title is not None:
            b.title = payload.title
        if payload.author is not None:
            b.author = payload.author
        if payload.settings is not None:
            b.settings = deep_merge(b.settings or {}, payload.settings)  # type: ignore[assignment]

        b.updated_at = now_utc()
        session.add(b)
        session.commit()
        session.refresh(b)
        return b


@router.delete("/{book_id}")
def delete_book(book_id: str) -> dict[str, bool]:
    """Delete a book and everything recorded for it (chapters, snapshots, runs, bible)."""
    with get_session() as session:
        b = session.get(Book, book_id)
        if not b:
            raise HTTPException(status_code=404, detail="Book not found")

        # Trace events first (depends on run_id).
        run_ids = [r.id for r in session.exec(select(Run).where(Run.book_id == book_id))]
        if run_ids:
            for evt in session.exec(select(TraceEvent).where(TraceEvent.run_id.in_(run_ids))):
                session.delete(evt)
            for r in session.exec(select(Run).where(Run.book_id == book_id)):
                session.delete(r)

        for model in (ChatMessage, StoryEntity, ChapterSnapshot, Chapter):
            for row in session.exec(select(model).where(model.book_id == book_id)):
                session.delete(row)

        session.delete(b)
        session.commit()

    return {"ok": True}
