from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel
from sqlmodel import select

from ..config import resolve_guard_settings
from ..db import get_session
from ..errors import ChapterBusy
from ..models import Book, Chapter, clone_chapter
from ..pipeline.session import SessionRegistry
from ..search_replace import SearchOptions, build_sample, count_matches_in_html, replace_matches_in_html
from ..util import now_utc, strip_html


router = APIRouter(prefix="/api/books/{book_id}", tags=["search"])

REPLACE_REASONS = {
    "chapter": "Buscar/Reemplazar capitulo activo",
    "book": "Buscar/Reemplazar libro completo",
}


class SearchRequest(BaseModel):
    query: str
    case_sensitive: bool = False
    whole_word: bool = False


class ReplaceRequest(SearchRequest):
    replacement: str = ""
    scope: str = "chapter"  # chapter|book
    chapter_id: str | None = None


def _ordered_chapters(book_id: str) -> tuple[Book, list[Chapter]]:
    with get_session() as session:
        b = session.get(Book, book_id)
        if not b:
            raise HTTPException(status_code=404, detail="Book not found")
        chapters = list(
            session.exec(
                select(Chapter)
                .where(Chapter.book_id == book_id)
                .order_by(Chapter.chapter_index.asc(), Chapter.created_at.asc())
            )
        )
    return b, chapters


@router.post("/search")
def search_book(book_id: str, payload: SearchRequest) -> dict[str, Any]:
    _, chapters = _ordered_chapters(book_id)
    opts = SearchOptions(case_sensitive=payload.case_sensitive, whole_word=payload.whole_word)
    matches = []
    for ch in chapters:
        n = count_matches_in_html(ch.content, payload.query, opts)
        if n:
            matches.append(
                {
                    "chapter_id": ch.id,
                    "chapter_title": ch.title,
                    "matches": n,
                    "sample": build_sample(strip_html(ch.content), payload.query, opts),
                }
            )
    return {"total_matches": sum(m["matches"] for m in matches), "matches": matches}


@router.post("/replace")
async def replace_in_book(book_id: str, payload: ReplaceRequest, request: Request) -> dict[str, Any]:
    """
    Replace literally in one chapter or the whole book.

    Each chapter that changes is snapshotted first (when auto-versioning is
    on) and written through the ledger, which drops its redo history.
    """

    if not payload.query.strip():
        raise HTTPException(status_code=400, detail="empty_query")
    scope = payload.scope if payload.scope in REPLACE_REASONS else None
    if scope is None:
        raise HTTPException(status_code=400, detail="invalid_scope")

    book, chapters = _ordered_chapters(book_id)
    if scope == "chapter":
        chapters = [ch for ch in chapters if ch.id == payload.chapter_id]
        if not chapters:
            raise HTTPException(status_code=404, detail="Chapter not found")

    registry: SessionRegistry = request.app.state.registry
    ledger = registry.ledger(book_id)
    auto_versioning = resolve_guard_settings(book.settings).auto_versioning
    opts = SearchOptions(case_sensitive=payload.case_sensitive, whole_word=payload.whole_word)

    planned = []
    for ch in chapters:
        new_html, n = replace_matches_in_html(ch.content, payload.query, payload.replacement, opts)
        if n:
            planned.append((ch, new_html, n))

    # Hold every affected chapter before the first write: a busy chapter aborts with nothing changed.
    try:
        with registry.hold_chapters([ch.id for ch, _, _ in planned]):
            changed: list[dict[str, Any]] = []
            for ch, new_html, n in planned:
                if auto_versioning:
                    await ledger.record_snapshot(ch, REPLACE_REASONS[scope])
                await ledger.write(clone_chapter(ch, content=new_html, updated_at=now_utc()))
                changed.append({"chapter_id": ch.id, "chapter_title": ch.title, "replacements": n})
    except ChapterBusy:
        raise HTTPException(status_code=409, detail="chapter_busy")

    return {"total_replacements": sum(c["replacements"] for c in changed), "chapters": changed}
