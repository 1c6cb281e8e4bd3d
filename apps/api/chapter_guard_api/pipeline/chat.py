"""
Chat requests that are not a single-chapter continuation.

- answer_chat: conversational reply, the chapter is never written.
- apply_to_book: the fixed-iteration rewrite applied to every chapter in
  order, each one through the guarded write.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..errors import ChapterNotFound
from ..models import Chapter
from .context_selector import format_story_context, select_story_context
from .continuation import MAX_ITERATIONS_LIMIT, AgentState
from .guarded_write import apply_guarded_write
from .prompts import build_chat_prompt, build_round_prompt
from .session import PipelineSession


logger = logging.getLogger(__name__)

AGENT = "Chat"
CHAT_SCOPES = ("chapter", "book")


@dataclass
class BookApplyResult:
    state: AgentState
    iterations: int
    chapters: list[Chapter] = field(default_factory=list)
    writes: int = 0
    summaries_found: int = 0
    stopped_at: tuple[int, int] | None = None  # (chapter position, iteration) of a rejected write


def book_apply_reason(position: int, iteration: int, total_iterations: int) -> str:
    return f"Chat auto-aplicar libro cap {position} iter {iteration}/{total_iterations}"


def _book_context(chapters: list[Chapter]) -> str:
    return "\n\n".join(f"Capitulo {i}: {ch.title}\n{ch.plain_text}" for i, ch in enumerate(chapters, start=1))


async def answer_chat(
    session: PipelineSession,
    message: str,
    *,
    scope: str = "chapter",
    chapter: Chapter | None = None,
    history: str = "",
) -> str:
    chapter_text = chapter.plain_text if chapter is not None else ""
    ctx = select_story_context(
        session.characters,
        session.locations,
        "\n".join([message, chapter.title if chapter is not None else "", chapter_text]),
        session.recent_text,
        session.settings.context,
        continuity_rules=session.continuity_rules,
    )
    prompt = build_chat_prompt(
        scope=scope,
        message=message,
        book_title=session.book_title,
        language=session.settings.language,
        foundation=session.foundation,
        chapter_title=chapter.title if chapter is not None else None,
        length_preset=chapter.length_preset if chapter is not None else None,
        chapter_text=chapter_text,
        book_text=session.book_text,
        history=history,
        story_context=format_story_context(ctx),
    )
    session.emit("chat_started", AGENT, {"scope": scope, "chapter_id": chapter.id if chapter is not None else None})
    return await session.generate(prompt)


async def apply_to_book(
    session: PipelineSession,
    chapter_ids: list[str],
    instruction: str,
    *,
    iterations: int | None = None,
) -> BookApplyResult:
    """
    Rewrite every chapter, in order, `iterations` times.

    A rejected review stops the whole pass; chapters written before it stay
    persisted. The book context in each prompt reflects the chapters already
    rewritten in this pass.
    """

    settings = session.settings
    total = settings.chat_apply_iterations if iterations is None else iterations
    total = max(1, min(MAX_ITERATIONS_LIMIT, int(total)))

    working: list[Chapter] = []
    for chapter_id in chapter_ids:
        chapter = await session.store.get_chapter(chapter_id)
        if chapter is None:
            raise ChapterNotFound(chapter_id)
        working.append(chapter)

    result = BookApplyResult(state=AgentState.RUNNING, iterations=total)
    for iteration in range(1, total + 1):
        for index, chapter in enumerate(working):
            position = index + 1
            reason = book_apply_reason(position, iteration, total)
            session.emit(
                "round_started",
                AGENT,
                {"chapter_id": chapter.id, "position": position, "iteration": iteration, "max_rounds": total},
            )
            if settings.auto_versioning:
                await session.ledger.record_snapshot(chapter, reason)

            chapter_text = chapter.plain_text
            ctx = select_story_context(
                session.characters,
                session.locations,
                "\n".join([instruction, chapter.title, chapter_text]),
                session.recent_text,
                settings.context,
                continuity_rules=session.continuity_rules,
            )
            prompt = build_round_prompt(
                continuous=False,
                instruction=instruction,
                book_title=session.book_title,
                chapter_title=chapter.title,
                chapter_text=chapter_text,
                language=settings.language,
                length_preset=chapter.length_preset,
                foundation=session.foundation,
                round_no=iteration,
                max_rounds=total,
                story_context=format_story_context(ctx),
                book_text=_book_context(working),
                chapter_position=(position, len(working)),
            )
            raw = await session.generate(prompt)
            outcome = await apply_guarded_write(
                session, chapter, raw, instruction=instruction, reason=None, review_title=reason
            )
            if outcome is None:
                logger.info("book apply cancelled by review at chapter %s, iteration %s", position, iteration)
                result.state = AgentState.CANCELLED_BY_REVIEW
                result.stopped_at = (position, iteration)
                break

            working[index] = outcome.chapter
            result.writes += 1
            if outcome.summary_text:
                result.summaries_found += 1
            session.emit(
                "round_finished",
                AGENT,
                {"chapter_id": chapter.id, "position": position, "iteration": iteration},
            )
        if result.state is AgentState.CANCELLED_BY_REVIEW:
            break

    if result.state is AgentState.RUNNING:
        result.state = AgentState.DONE
    result.chapters = working
    session.emit(
        "book_apply_finished",
        AGENT,
        {"state": result.state.value, "writes": result.writes, "iterations": total},
    )
    return result
