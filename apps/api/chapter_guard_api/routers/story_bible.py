from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException
from sqlmodel import select

from ..config import resolve_guard_settings
from ..db import get_session
from ..models import Book, Chapter, StoryEntity, StoryEntityWrite
from ..pipeline.context_selector import format_story_context, select_story_context, split_aliases
from ..story_bible_sync import DEFAULT_MAX_NEW, SyncResult, detect_new_entities
from ..util import deep_merge, now_utc


router = APIRouter(prefix="/api/books/{book_id}/story-bible", tags=["story-bible"])

ENTITY_KINDS = ("character", "location")
_TEXT_FIELDS = ("name", "role", "traits", "goal", "description", "atmosphere", "notes")


def continuity_rules_of(book: Book) -> str:
    bible = (book.settings or {}).get("story_bible")
    if isinstance(bible, dict) and isinstance(bible.get("continuity_rules"), str):
        return bible["continuity_rules"]
    return ""


def load_entities(book_id: str) -> tuple[list[StoryEntity], list[StoryEntity]]:
    with get_session() as session:
        rows = list(
            session.exec(
                select(StoryEntity).where(StoryEntity.book_id == book_id).order_by(StoryEntity.id.asc())
            )
        )
    return [e for e in rows if e.kind == "character"], [e for e in rows if e.kind == "location"]


def sync_from_chapter(
    book_id: str,
    chapter: Chapter,
    *,
    max_characters: int = DEFAULT_MAX_NEW,
    max_locations: int = DEFAULT_MAX_NEW,
) -> tuple[SyncResult, list[StoryEntity]]:
    """Add characters/locations detected in the chapter; existing entries are never touched."""
    characters, locations = load_entities(book_id)
    result = detect_new_entities(
        chapter.plain_text,
        chapter.title,
        [*characters, *locations],
        max_characters=max_characters,
        max_locations=max_locations,
    )
    if not result.added:
        return result, []
    with get_session() as session:
        rows = [StoryEntity(book_id=book_id, kind=d.kind, name=d.name, notes=d.notes) for d in result.added]
        session.add_all(rows)
        session.commit()
        for row in rows:
            session.refresh(row)
    return result, rows


def _get_book(session, book_id: str) -> Book:
    b = session.get(Book, book_id)
    if not b:
        raise HTTPException(status_code=404, detail="Book not found")
    return b


def _apply(entity: StoryEntity, payload: StoryEntityWrite) -> None:
    for key in _TEXT_FIELDS:
        value = getattr(payload, key)
        if value is not None:
            setattr(entity, key, value.strip() if key == "name" else value)
    if payload.aliases is not None:
        entity.aliases = ", ".join(split_aliases(payload.aliases))


@router.get("")
def get_story_bible(book_id: str) -> dict[str, Any]:
    with get_session() as session:
        b = _get_book(session, book_id)
        rules = continuity_rules_of(b)
    characters, locations = load_entities(book_id)
    return {"characters": characters, "locations": locations, "continuity_rules": rules}


@router.post("/entities")
def create_entity(book_id: str, payload: StoryEntityWrite) -> StoryEntity:
    kind = (payload.kind or "").strip().lower()
    if kind not in ENTITY_KINDS:
        raise HTTPException(status_code=400, detail="invalid_kind")
    if not (payload.name or "").strip():
        raise HTTPException(status_code=400, detail="missing_name")
    with get_session() as session:
        _get_book(session, book_id)
        entity = StoryEntity(book_id=book_id, kind=kind, name="")
        _apply(entity, payload)
        session.add(entity)
        session.commit()
        session.refresh(entity)
        return entity


@router.patch("/entities/{entity_id}")
def update_entity(book_id: str, entity_id: int, payload: StoryEntityWrite) -> StoryEntity:
    with get_session() as session:
        entity = session.get(StoryEntity, entity_id)
        if not entity or entity.book_id != book_id:
            raise HTTPException(status_code=404, detail="Entity not found")
        if payload.name is not None and not payload.name.strip():
            raise HTTPException(status_code=400, detail="missing_name")
        _apply(entity, payload)
        session.add(entity)
        session.commit()
        session.refresh(entity)
        return entity


@router.delete("/entities/{entity_id}")
def delete_entity(book_id: str, entity_id: int) -> dict[str, bool]:
    with get_session() as session:
        entity = session.get(StoryEntity, entity_id)
        if not entity or entity.book_id != book_id:
            raise HTTPException(status_code=404, detail="Entity not found")
        session.delete(entity)
        session.commit()
    return {"ok": True}


@router.put("/continuity-rules")
def set_continuity_rules(book_id: str, payload: dict[str, Any]) -> dict[str, str]:
    text = payload.get("text")
    if not isinstance(text, str):
        raise HTTPException(status_code=400, detail="invalid_text")
    with get_session() as session:
        b = _get_book(session, book_id)
        b.settings = deep_merge(b.settings or {}, {"story_bible": {"continuity_rules": text}})  # type: ignore[assignment]
        b.updated_at = now_utc()
        session.add(b)
        session.commit()
    return {"continuity_rules": text}


@router.get("/select")
def preview_selection(book_id: str, query: str = "", recent: str = "") -> dict[str, Any]:
    """What the context selector would feed the model for this query."""
    with get_session() as session:
        b = _get_book(session, book_id)
        settings = resolve_guard_settings(b.settings)
        rules = continuity_rules_of(b)
    characters, locations = load_entities(book_id)
    ctx = select_story_context(characters, locations, query, recent, settings.context, continuity_rules=rules)
    return {
        "characters": [c.name for c in ctx.characters],
        "locations": [loc.name for loc in ctx.locations],
        "prompt_block": format_story_context(ctx),
    }


@router.post("/sync")
def sync_story_bible(book_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Scan one chapter and add the characters/locations the story bible is missing."""
    chapter_id = str(payload.get("chapter_id") or "")
    try:
        max_characters = max(0, int(payload.get("max_characters", DEFAULT_MAX_NEW)))
        max_locations = max(0, int(payload.get("max_locations", DEFAULT_MAX_NEW)))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="invalid_limits")
    with get_session() as session:
        _get_book(session, book_id)
        chapter = session.get(Chapter, chapter_id) if chapter_id else None
        if not chapter or chapter.book_id != book_id:
            raise HTTPException(status_code=404, detail="Chapter not found")
    _, rows = sync_from_chapter(book_id, chapter, max_characters=max_characters, max_locations=max_locations)
    return {
        "characters": [e for e in rows if e.kind == "character"],
        "locations": [e for e in rows if e.kind == "location"],
    }
