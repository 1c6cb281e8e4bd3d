from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy import func
from sqlmodel import select

from ..config import resolve_length_preset
from ..db import get_session
from ..errors import ChapterBusy, ChapterNotFound
from ..models import Book, Chapter, ChapterCreate, ChapterSnapshot, ChapterUpdate, chapter_to_json, clone_chapter
from ..pipeline.session import SessionRegistry
from ..util import now_utc


router = APIRouter(prefix="/api/books/{book_id}/chapters", tags=["chapters"])


def _registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def _load(book_id: str, chapter_id: str) -> Chapter:
    with get_session() as session:
        if not session.get(Book, book_id):
            raise HTTPException(status_code=404, detail="Book not found")
        ch = session.get(Chapter, chapter_id)
        if not ch or ch.book_id != book_id:
            raise HTTPException(status_code=404, detail="Chapter not found")
        return ch


def _apply_update(ch: Chapter, payload: ChapterUpdate) -> Chapter:
    changes: dict[str, Any] = {"updated_at": now_utc()}
    if payload.title is not None:
        changes["title"] = payload.title.strip() or ch.title
    if payload.content is not None:
        changes["content"] = payload.content or "<p></p>"
    if payload.length_preset is not None:
        changes["length_preset"] = resolve_length_preset(payload.length_preset)
    return clone_chapter(ch, **changes)


def _ledger_state(registry: SessionRegistry, book_id: str, chapter_id: str) -> dict[str, Any]:
    ledger = registry.ledger(book_id)
    return {"cursor": ledger.cursor(chapter_id), "redo_depth": ledger.redo_depth(chapter_id)}


@router.get("")
def list_chapters(book_id: str) -> list[Chapter]:
    with get_session() as session:
        if not session.get(Book, book_id):
            raise HTTPException(status_code=404, detail="Book not found")
        return list(
            session.exec(
                select(Chapter)
                .where(Chapter.book_id == book_id)
                .order_by(Chapter.chapter_index.asc(), Chapter.created_at.asc())
            )
        )


@router.post("")
def create_chapter(book_id: str, payload: ChapterCreate) -> Chapter:
    with get_session() as session:
        if not session.get(Book, book_id):
            raise HTTPException(status_code=404, detail="Book not found")
        last_index = session.exec(select(func.max(Chapter.chapter_index)).where(Chapter.book_id == book_id)).one()
        index = int(last_index or 0) + 1
        ch = Chapter(
            book_id=book_id,
            chapter_index=index,
            title=(payload.title or "").strip() or f"Capitulo {index}",
            content=payload.content or "<p></p>",
            length_preset=resolve_length_preset(payload.length_preset),
        )
        session.add(ch)
        session.commit()
        session.refresh(ch)
        return ch


@router.get("/{chapter_id}")
def get_chapter(book_id: str, chapter_id: str) -> Chapter:
    return _load(book_id, chapter_id)


@router.put("/{chapter_id}")
async def save_chapter(book_id: str, chapter_id: str, payload: ChapterUpdate, request: Request) -> Chapter:
    """Manual save. A forward edit, so the chapter's redo history is dropped."""
    registry = _registry(request)
    if registry.is_busy(chapter_id):
        raise HTTPException(status_code=409, detail="chapter_busy")
    ch = _load(book_id, chapter_id)
    return await registry.ledger(book_id).write(_apply_update(ch, payload))


@router.patch("/{chapter_id}")
async def update_chapter_meta(book_id: str, chapter_id: str, payload: ChapterUpdate, request: Request) -> Chapter:
    """Rename or change the length preset; content in the payload is ignored."""
    registry = _registry(request)
    if registry.is_busy(chapter_id):
        raise HTTPException(status_code=409, detail="chapter_busy")
    ch = _load(book_id, chapter_id)
    meta = ChapterUpdate(title=payload.title, length_preset=payload.length_preset)
    return await registry.ledger(book_id).write(_apply_update(ch, meta))


@router.put("/{chapter_id}/autosave")
async def autosave_chapter(book_id: str, chapter_id: str, payload: ChapterUpdate, request: Request) -> dict[str, Any]:
    registry = _registry(request)
    ch = _load(book_id, chapter_id)
    skip_reason = registry.begin_autosave(chapter_id)
    if skip_reason:
        return {"skipped": True, "reason": skip_reason}
    try:
        saved = await registry.ledger(book_id).write(_apply_update(ch, payload))
    finally:
        registry.end_autosave(chapter_id)
    return {"skipped": False, "chapter": chapter_to_json(saved)}


@router.delete("/{chapter_id}")
def delete_chapter(book_id: str, chapter_id: str, request: Request) -> dict[str, bool]:
    if _registry(request).is_busy(chapter_id):
        raise HTTPException(status_code=409, detail="chapter_busy")
    with get_session() as session:
        if not session.get(Book, book_id):
            raise HTTPException(status_code=404, detail="Book not found")
        ch = session.get(Chapter, chapter_id)
        if not ch or ch.book_id != book_id:
            raise HTTPException(status_code=404, detail="Chapter not found")
        count = session.exec(select(func.count()).select_from(Chapter).where(Chapter.book_id == book_id)).one()
        if int(count) <= 1:
            raise HTTPException(status_code=409, detail="cannot_delete_last_chapter")
        # Snapshot rows stay so their versions are never reissued.
        session.delete(ch)
        session.commit()
    return {"ok": True}


@router.get("/{chapter_id}/snapshots")
def list_snapshots(book_id: str, chapter_id: str) -> list[ChapterSnapshot]:
    _load(book_id, chapter_id)
    with get_session() as session:
        return list(
            session.exec(
                select(ChapterSnapshot)
                .where(ChapterSnapshot.chapter_id == chapter_id)
                .order_by(ChapterSnapshot.version.asc())
            )
        )


@router.post("/{chapter_id}/snapshots")
async def create_snapshot(
    book_id: str, chapter_id: str, payload: dict[str, Any], request: Request
) -> ChapterSnapshot:
    ch = _load(book_id, chapter_id)
    reason = str(payload.get("reason") or "").strip() or "Snapshot manual"
    return await _registry(request).ledger(book_id).record_snapshot(ch, reason)


async def _step(book_id: str, chapter_id: str, request: Request, direction: str) -> dict[str, Any]:
    registry = _registry(request)
    _load(book_id, chapter_id)
    ledger = registry.ledger(book_id)
    try:
        with registry.hold_chapter(chapter_id):
            if direction == "undo":
                ch = await ledger.undo(chapter_id)
            else:
                ch = await ledger.redo(chapter_id)
    except ChapterBusy:
        raise HTTPException(status_code=409, detail="chapter_busy")
    except ChapterNotFound:
        raise HTTPException(status_code=404, detail="Chapter not found")
    return {
        "ok": ch is not None,
        "chapter": chapter_to_json(ch) if ch is not None else None,
        **_ledger_state(registry, book_id, chapter_id),
    }


@router.post("/{chapter_id}/undo")
async def undo_chapter(book_id: str, chapter_id: str, request: Request) -> dict[str, Any]:
    return await _step(book_id, chapter_id, request, "undo")


@router.post("/{chapter_id}/redo")
async def redo_chapter(book_id: str, chapter_id: str, request: Request) -> dict[str, Any]:
    return await _step(book_id, chapter_id, request, "redo")
