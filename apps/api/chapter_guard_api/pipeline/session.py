from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from ..config import GuardSettings
from ..errors import ChapterBusy
from ..llm import ModelClient
from ..util import normalize_ai_output
from .safe_mode import ReviewGate
from .snapshots import ChapterStore, SnapshotLedger


logger = logging.getLogger(__name__)

EventSink = Callable[[str, Optional[str], dict[str, Any]], None]


def _discard_event(event_type: str, agent: str | None, data: dict[str, Any]) -> None:
    return None


@dataclass(frozen=True)
class GuardResult:
    text: str
    summary_text: str = ""
    corrected: bool = False


@dataclass
class PipelineSession:
    """Everything one pipeline run needs, passed explicitly to every stage."""

    book_id: str
    settings: GuardSettings
    client: ModelClient
    store: ChapterStore
    ledger: SnapshotLedger
    review_gate: ReviewGate
    book_title: str = ""
    foundation: dict[str, Any] = field(default_factory=dict)
    characters: list[Any] = field(default_factory=list)
    locations: list[Any] = field(default_factory=list)
    continuity_rules: str = ""
    recent_text: str = ""
    book_text: str = ""
    emit: EventSink = _discard_event

    async def generate(self, prompt: str) -> str:
        logger.debug("model call: %s prompt chars", len(prompt))
        raw = await self.client.generate(
            prompt,
            system_prompt=self.settings.system_prompt,
            temperature=self.settings.temperature,
            model=self.settings.model,
        )
        return normalize_ai_output(raw)


class SessionRegistry:
    """
    Process-wide pipeline state: one ledger per book, the review gate and the
    per-chapter busy/autosave flags.
    """

    def __init__(self, store_factory: Callable[[str], ChapterStore]) -> None:
        self._store_factory = store_factory
        self._lock = threading.Lock()
        self._ledgers: dict[str, SnapshotLedger] = {}
        self._busy: set[str] = set()
        self._autosaving: set[str] = set()
        self.review_gate = ReviewGate()

    def ledger(self, book_id: str) -> SnapshotLedger:
        with self._lock:
            ledger = self._ledgers.get(book_id)
            if ledger is None:
                ledger = SnapshotLedger(self._store_factory(book_id))
                self._ledgers[book_id] = ledger
            return ledger

    def is_busy(self, chapter_id: str) -> bool:
        with self._lock:
            return chapter_id in self._busy

    @contextmanager
    def hold_chapter(self, chapter_id: str) -> Iterator[None]:
        """Exclusive hold for one pipeline (or undo/redo) on a chapter."""
        with self.hold_chapters([chapter_id]):
            yield

    @contextmanager
    def hold_chapters(self, chapter_ids: list[str]) -> Iterator[None]:
        """All-or-nothing hold on several chapters; raises before holding any if one is busy."""
        ids = list(dict.fromkeys(chapter_ids))
        with self._lock:
            for cid in ids:
                if cid in self._busy:
                    raise ChapterBusy(cid)
            self._busy.update(ids)
        try:
            yield
        finally:
            with self._lock:
                self._busy.difference_update(ids)

    def begin_autosave(self, chapter_id: str) -> str | None:
        """Returns a skip reason, or None when the caller may save."""
        with self._lock:
            if chapter_id in self._busy:
                return "pipeline_active"
            if chapter_id in self._autosaving:
                return "autosave_in_flight"
            self._autosaving.add(chapter_id)
            return None

    def end_autosave(self, chapter_id: str) -> None:
        with self._lock:
            self._autosaving.discard(chapter_id)
