from __future__ import annotations

import os
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

import pytest

# Ensure `chapter_guard_api` is importable when running pytest via the venv entrypoint.
API_ROOT = Path(__file__).resolve().parent
if str(API_ROOT) not in sys.path:
    sys.path.insert(0, str(API_ROOT))

# Tests never touch the developer's local database.
os.environ.setdefault("CHAPTER_GUARD_DB_PATH", str(Path(tempfile.mkdtemp(prefix="chapter-guard-")) / "test.sqlite3"))

from chapter_guard_api.config import GuardSettings  # noqa: E402
from chapter_guard_api.models import Chapter, ChapterSnapshot, chapter_to_json, clone_chapter  # noqa: E402
from chapter_guard_api.pipeline.safe_mode import ReviewGate  # noqa: E402
from chapter_guard_api.pipeline.session import PipelineSession  # noqa: E402
from chapter_guard_api.pipeline.snapshots import SnapshotLedger  # noqa: E402
from chapter_guard_api.util import plain_text_to_html  # noqa: E402


class FakeModelClient:
    """Replays canned replies (strings or callables taking the prompt) in order."""

    def __init__(self, replies: Iterable[str | Callable[[str], str]] = ()) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def generate(self, prompt: str, *, system_prompt: str, temperature=None, model=None) -> str:
        self.prompts.append(prompt)
        if not self.replies:
            raise AssertionError("unexpected model call")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply(prompt) if callable(reply) else reply


class MemoryChapterStore:
    def __init__(self) -> None:
        self.chapters: dict[str, Chapter] = {}
        self.snapshots: list[ChapterSnapshot] = []
        self.saves = 0

    async def get_chapter(self, chapter_id: str) -> Chapter | None:
        ch = self.chapters.get(chapter_id)
        return clone_chapter(ch) if ch else None

    async def save_chapter(self, chapter: Chapter) -> Chapter:
        self.saves += 1
        self.chapters[chapter.id] = clone_chapter(chapter)
        return clone_chapter(chapter)

    async def save_snapshot(self, chapter: Chapter, reason: str) -> ChapterSnapshot:
        version = max((s.version for s in self.snapshots if s.chapter_id == chapter.id), default=0) + 1
        snap = ChapterSnapshot(
            id=len(self.snapshots) + 1,
            book_id=chapter.book_id,
            chapter_id=chapter.id,
            version=version,
            reason=reason,
            chapter=chapter_to_json(chapter),
        )
        self.snapshots.append(snap)
        return snap

    async def list_snapshots(self, chapter_id: str) -> list[ChapterSnapshot]:
        return sorted((s for s in self.snapshots if s.chapter_id == chapter_id), key=lambda s: s.version)


@dataclass
class Harness:
    session: PipelineSession
    chapter: Chapter
    client: FakeModelClient
    store: MemoryChapterStore
    events: list[tuple[str, Any, dict[str, Any]]] = field(default_factory=list)

    def event_types(self) -> list[str]:
        return [e[0] for e in self.events]


@pytest.fixture
def make_harness() -> Callable[..., Harness]:
    def _make(
        replies: Iterable[Any] = (),
        *,
        text: str = "Ana camina sola.",
        settings: GuardSettings | None = None,
        characters: list[Any] | None = None,
        locations: list[Any] | None = None,
        recent_text: str = "",
    ) -> Harness:
        store = MemoryChapterStore()
        chapter = Chapter(id="ch-1", book_id="book-1", title="Capitulo 1", content=plain_text_to_html(text))
        store.chapters[chapter.id] = clone_chapter(chapter)
        client = FakeModelClient(replies)
        harness = Harness(
            session=None,  # type: ignore[arg-type]
            chapter=chapter,
            client=client,
            store=store,
        )
        harness.session = PipelineSession(
            book_id="book-1",
            settings=settings or GuardSettings(continuity_guard_enabled=False),
            client=client,
            store=store,
            ledger=SnapshotLedger(store),
            review_gate=ReviewGate(),
            book_title="Libro de prueba",
            characters=characters or [],
            locations=locations or [],
            recent_text=recent_text,
            emit=lambda t, a, d: harness.events.append((t, a, d)),
        )
        return harness

    return _make
