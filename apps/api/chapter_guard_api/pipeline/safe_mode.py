"""Human-in-the-loop gate for large automatic edits."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

from ..diff import diff_text_blocks, summarize_diff
from ..errors import ReviewPending
from ..util import count_words, now_utc


logger = logging.getLogger(__name__)

ABSOLUTE_DELTA_WORDS = 120
RELATIVE_DELTA = 0.28
EMPTY_BEFORE_MIN_WORDS = 90


def should_review(before_text: str | None, after_text: str | None) -> bool:
    before = count_words(before_text)
    after = count_words(after_text)
    if before == 0:
        return after >= EMPTY_BEFORE_MIN_WORDS
    delta = abs(after - before)
    return delta >= ABSOLUTE_DELTA_WORDS or delta / max(1, before) >= RELATIVE_DELTA


@dataclass
class ReviewRequest:
    title: str
    subtitle: str
    before_text: str
    after_text: str
    chapter_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=now_utc)

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "subtitle": self.subtitle,
            "chapter_id": self.chapter_id,
            "before": self.before_text,
            "after": self.after_text,
            "before_words": count_words(self.before_text),
            "after_words": count_words(self.after_text),
            "diff_summary": summarize_diff(diff_text_blocks(self.before_text, self.after_text)).to_json(),
            "created_at": self.created_at.isoformat(),
        }


class ReviewGate:
    """
    Single-slot channel between a suspended pipeline and the review surface.

    The pipeline awaits `request_review`; exactly one `resolve(id, approved)`
    call wakes it. Decisions may arrive from another thread (sync routes run in
    a threadpool), hence the thread lock and call_soon_threadsafe.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: tuple[ReviewRequest, asyncio.Future[bool], asyncio.AbstractEventLoop] | None = None

    @property
    def pending(self) -> ReviewRequest | None:
        with self._lock:
            return self._pending[0] if self._pending else None

    async def request_review(
        self,
        request: ReviewRequest,
        on_requested: Callable[[ReviewRequest], None] | None = None,
    ) -> bool:
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._pending is not None:
                raise ReviewPending(self._pending[0].id)
            fut: asyncio.Future[bool] = loop.create_future()
            self._pending = (request, fut, loop)

        logger.info("review requested: %s (chapter=%s)", request.id, request.chapter_id)
        try:
            if on_requested is not None:
                on_requested(request)
            return await fut
        finally:
            with self._lock:
                if self._pending is not None and self._pending[0].id == request.id:
                    self._pending = None

    def resolve(self, review_id: str, approved: bool) -> bool:
        """Deliver the decision. False when `review_id` is not the pending review."""
        with self._lock:
            if self._pending is None or self._pending[0].id != review_id:
                return False
            _, fut, loop = self._pending
            self._pending = None

        def _deliver() -> None:
            if not fut.done():
                fut.set_result(approved)

        loop.call_soon_threadsafe(_deliver)
        logger.info("review %s %s", review_id, "approved" if approved else "rejected")
        return True
