"""
Multi-round continuation loop for one authoring request.

RUNNING(round) -> DONE when the model reports DONE or max rounds are spent,
RUNNING(round) -> CANCELLED_BY_REVIEW when the reviewer rejects a round.
Earlier rounds stay persisted; only the snapshot ledger can take them back.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from ..errors import ChapterNotFound
from ..models import Chapter
from .context_selector import format_story_context, select_story_context
from .guarded_write import apply_guarded_write
from .prompts import build_round_prompt
from .session import PipelineSession
from .structured_output import Malformed, continuation_fields, parse_continuation


logger = logging.getLogger(__name__)

AGENT = "ContinuationAgent"

MAX_ROUNDS_LIMIT = 12
MAX_ITERATIONS_LIMIT = 10


class AgentState(str, enum.Enum):
    RUNNING = "RUNNING"
    DONE = "DONE"
    CANCELLED_BY_REVIEW = "CANCELLED_BY_REVIEW"


@dataclass
class ContinuationState:
    max_rounds: int
    round: int = 0
    previous_summary: str = ""
    status: str = "CONTINUE"  # last model-reported token
    state: AgentState = AgentState.RUNNING


@dataclass(frozen=True)
class ContinuationResult:
    state: AgentState
    rounds: int
    chapter: Chapter
    summary_text: str = ""


def round_reason(continuous: bool, round_no: int, max_rounds: int) -> str:
    if continuous:
        return f"Agente continuo ronda {round_no}/{max_rounds}"
    return f"Chat auto-aplicar {round_no}/{max_rounds}"


async def run_continuation(
    session: PipelineSession,
    chapter_id: str,
    instruction: str,
    *,
    continuous: bool | None = None,
    max_rounds: int | None = None,
) -> ContinuationResult:
    """
    Drive the round loop.

    Continuous mode stops on the model's DONE token; fixed mode runs a set
    number of iterations and ignores status tokens. Model errors propagate
    and end the loop without writing the failing round.
    """

    settings = session.settings
    is_continuous = settings.continuous_agent_enabled if continuous is None else continuous
    if is_continuous:
        limit = settings.continuous_agent_max_rounds if max_rounds is None else max_rounds
        limit = max(1, min(MAX_ROUNDS_LIMIT, int(limit)))
    else:
        limit = settings.chat_apply_iterations if max_rounds is None else max_rounds
        limit = max(1, min(MAX_ITERATIONS_LIMIT, int(limit)))

    chapter = await session.store.get_chapter(chapter_id)
    if chapter is None:
        raise ChapterNotFound(chapter_id)

    state = ContinuationState(max_rounds=limit)
    last_summary = ""

    while state.round < state.max_rounds:
        state.round += 1
        reason = round_reason(is_continuous, state.round, state.max_rounds)
        session.emit("round_started", AGENT, {"round": state.round, "max_rounds": state.max_rounds})

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
            continuous=is_continuous,
            instruction=instruction,
            book_title=session.book_title,
            chapter_title=chapter.title,
            chapter_text=chapter_text,
            language=settings.language,
            length_preset=chapter.length_preset,
            foundation=session.foundation,
            round_no=state.round,
            max_rounds=state.max_rounds,
            previous_summary=state.previous_summary,
            story_context=format_story_context(ctx),
            book_text=session.book_text,
        )
        raw = await session.generate(prompt)

        if is_continuous:
            parsed = parse_continuation(raw)
            if isinstance(parsed, Malformed):
                logger.warning("round %s: status token missing, assuming CONTINUE", state.round)
                session.emit("malformed_output", AGENT, {"round": state.round, "expected": "ESTADO: DONE|CONTINUE"})
            status, round_summary, text = continuation_fields(parsed)
        else:
            status, round_summary, text = "CONTINUE", "", raw

        outcome = await apply_guarded_write(
            session,
            chapter,
            text,
            instruction=instruction,
            reason=None,
            review_title=reason,
        )
        if outcome is None:
            state.state = AgentState.CANCELLED_BY_REVIEW
            logger.info("continuation cancelled by review at round %s", state.round)
            break

        chapter = outcome.chapter
        state.status = status
        state.previous_summary = round_summary
        last_summary = outcome.summary_text or round_summary or last_summary
        session.emit(
            "round_finished",
            AGENT,
            {"round": state.round, "status": status, "summary": round_summary},
        )

        if is_continuous and status == "DONE":
            break

    if state.state is AgentState.RUNNING:
        state.state = AgentState.DONE
    session.emit("continuation_finished", AGENT, {"state": state.state.value, "rounds": state.round})
    return ContinuationResult(state=state.state, rounds=state.round, chapter=chapter, summary_text=last_summary)
