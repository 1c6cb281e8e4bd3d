from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import Column
from sqlalchemy.types import JSON
from sqlmodel import Field, SQLModel

from .util import now_utc, strip_html


LENGTH_PRESETS = ("short", "medium", "long")


class Book(SQLModel, table=True):
    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    title: str
    author: str = ""
    settings: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)


class Chapter(SQLModel, table=True):
    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    book_id: str = Field(foreign_key="book.id", index=True)
    chapter_index: int = Field(default=1, index=True)
    title: str
    content: str = "<p></p>"  # editor HTML
    length_preset: str = "medium"  # short|medium|long
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)

    @property
    def plain_text(self) -> str:
        return strip_html(self.content)


class ChapterSnapshot(SQLModel, table=True):
    __tablename__ = "chapter_snapshot"

    id: int | None = Field(default=None, primary_key=True)
    book_id: str = Field(index=True)
    # No foreign key: snapshots outlive deleted chapters so versions are never reused.
    chapter_id: str = Field(index=True)
    version: int = Field(index=True)
    reason: str = ""
    created_at: datetime = Field(default_factory=now_utc)
    chapter: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))


class StoryEntity(SQLModel, table=True):
    __tablename__ = "story_entity"

    id: int | None = Field(default=None, primary_key=True)
    book_id: str = Field(foreign_key="book.id", index=True)
    kind: str = Field(index=True)  # character|location
    name: str
    aliases: str = ""  # comma/semicolon/newline separated
    role: str = ""
    traits: str = ""
    goal: str = ""
    description: str = ""
    atmosphere: str = ""
    notes: str = ""
    created_at: datetime = Field(default_factory=now_utc)


class ChatMessage(SQLModel, table=True):
    __tablename__ = "chat_message"

    id: int | None = Field(default=None, primary_key=True)
    book_id: str = Field(foreign_key="book.id", index=True)
    chapter_id: str | None = Field(default=None, index=True)
    role: str  # user|assistant
    content: str
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Run(SQLModel, table=True):
    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    book_id: str = Field(foreign_key="book.id", index=True)
    chapter_id: str | None = Field(default=None, index=True)
    kind: str
    status: str = Field(default="running", index=True)  # running|completed|cancelled|failed
    created_at: datetime = Field(default_factory=now_utc)
    finished_at: datetime | None = None
    error: str | None = None


class TraceEvent(SQLModel, table=True):
    __tablename__ = "trace_event"

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(foreign_key="run.id", index=True)
    seq: int = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    event_type: str = Field(index=True)
    agent: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))


def clone_chapter(chapter: Chapter, **changes: Any) -> Chapter:
    data = {
        "id": chapter.id,
        "book_id": chapter.book_id,
        "chapter_index": chapter.chapter_index,
        "title": chapter.title,
        "content": chapter.content,
        "length_preset": chapter.length_preset,
        "created_at": chapter.created_at,
        "updated_at": chapter.updated_at,
    }
    data.update(changes)
    return Chapter(**data)


def chapter_to_json(chapter: Chapter) -> dict[str, Any]:
    return {
        "id": chapter.id,
        "book_id": chapter.book_id,
        "chapter_index": chapter.chapter_index,
        "title": chapter.title,
        "content": chapter.content,
        "length_preset": chapter.length_preset,
        "created_at": chapter.created_at.isoformat() if chapter.created_at else None,
        "updated_at": chapter.updated_at.isoformat() if chapter.updated_at else None,
    }


# ---- request bodies ----


class BookCreate(SQLModel):
    title: str
    author: str = ""


class BookUpdate(SQLModel):
    title: str | None = None
    author: str | None = None
    settings: dict[str, Any] | None = None


class ChapterCreate(SQLModel):
    title: str | None = None
    content: str | None = None
    length_preset: str | None = None


class ChapterUpdate(SQLModel):
    title: str | None = None
    content: str | None = None
    length_preset: str | None = None


class StoryEntityWrite(SQLModel):
    kind: str | None = None
    name: str | None = None
    aliases: str | list[str] | None = None
    role: str | None = None
    traits: str | None = None
    goal: str | None = None
    description: str | None = None
    atmosphere: str | None = None
    notes: str | None = None
