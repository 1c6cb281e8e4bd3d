from __future__ import annotations

from .llm import LLMError, ModelUnavailable


class GuardError(RuntimeError):
    pass


class ChapterNotFound(GuardError):
    def __init__(self, chapter_id: str) -> None:
        super().__init__(f"chapter_not_found:{chapter_id}")
        self.chapter_id = chapter_id


class ChapterBusy(GuardError):
    """Another pipeline already holds the chapter."""

    def __init__(self, chapter_id: str) -> None:
        super().__init__(f"chapter_busy:{chapter_id}")
        self.chapter_id = chapter_id


class ReviewPending(GuardError):
    """A human review is already waiting for a decision."""

    def __init__(self, review_id: str) -> None:
        super().__init__(f"review_pending:{review_id}")
        self.review_id = review_id


__all__ = [
    "ChapterBusy",
    "ChapterNotFound",
    "GuardError",
    "LLMError",
    "ModelUnavailable",
    "ReviewPending",
]
