from __future__ import annotations

import logging
from dataclasses import dataclass

from ..models import Chapter, clone_chapter
from ..util import count_words, now_utc, plain_text_to_html
from .continuity_guard import enforce_continuity
from .expansion_guard import enforce_expansion
from .safe_mode import ReviewRequest, should_review
from .session import PipelineSession


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteOutcome:
    chapter: Chapter
    summary_text: str = ""
    expansion_corrected: bool = False
    continuity_corrected: bool = False


async def apply_guarded_write(
    session: PipelineSession,
    chapter: Chapter,
    candidate_text: str,
    *,
    instruction: str,
    action_kind: str | None = None,
    reason: str | None = None,
    review_title: str = "Revisar cambios de IA",
) -> WriteOutcome | None:
    """
    Expansion guard, continuity guard, optional human review, snapshot, save.

    Returns None when the reviewer rejects; the stored chapter is untouched.
    `reason=None` skips the snapshot (the caller already took one).
    """

    original_text = chapter.plain_text

    expanded = await enforce_expansion(session, candidate_text, original_text, instruction, action_kind)
    checked = await enforce_continuity(
        session, original_text, expanded.text, instruction, chapter.title, session.recent_text
    )
    final_text = checked.text

    if session.settings.ai_safe_mode and should_review(original_text, final_text):
        request = ReviewRequest(
            title=review_title,
            subtitle=f"{chapter.title}: {count_words(original_text)} -> {count_words(final_text)} palabras",
            before_text=original_text,
            after_text=final_text,
            chapter_id=chapter.id,
        )
        approved = await session.review_gate.request_review(
            request, lambda req: session.emit("review_requested", "SafeModeGate", req.to_json())
        )
        if not approved:
            session.emit("review_rejected", "SafeModeGate", {"review_id": request.id, "chapter_id": chapter.id})
            return None
        session.emit("review_approved", "SafeModeGate", {"review_id": request.id, "chapter_id": chapter.id})

    if reason and session.settings.auto_versioning:
        await session.ledger.record_snapshot(chapter, reason)

    updated = clone_chapter(chapter, content=plain_text_to_html(final_text), updated_at=now_utc())
    saved = await session.ledger.write(updated)
    logger.info("chapter %s saved (%s words)", saved.id, count_words(final_text))
    session.emit(
        "chapter_saved",
        "SnapshotLedger",
        {"chapter_id": saved.id, "words": count_words(final_text), "snapshot": bool(reason and session.settings.auto_versioning)},
    )
    return WriteOutcome(
        chapter=saved,
        summary_text=expanded.summary_text,
        expansion_corrected=expanded.corrected,
        continuity_corrected=checked.corrected,
    )
