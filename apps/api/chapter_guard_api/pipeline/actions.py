from __future__ import annotations

import logging
from dataclasses import dataclass

from ..errors import ChapterNotFound
from ..models import Chapter
from .context_selector import format_story_context, select_story_context
from .guarded_write import apply_guarded_write
from .prompts import AI_ACTIONS, build_action_prompt
from .session import PipelineSession


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionResult:
    action_id: str
    chapter: Chapter | None
    applied: bool
    text: str = ""
    summary_text: str = ""


async def run_action(
    session: PipelineSession,
    chapter_id: str,
    action_id: str,
    *,
    idea_text: str = "",
) -> ActionResult:
    """
    One AI action on a chapter. Feedback actions return text and never write;
    the rest go through a single guarded write.
    """

    action = AI_ACTIONS.get(action_id)
    if action is None:
        raise ValueError(f"unknown_action:{action_id}")

    chapter = await session.store.get_chapter(chapter_id)
    if chapter is None:
        raise ChapterNotFound(chapter_id)

    chapter_text = chapter.plain_text
    ctx = select_story_context(
        session.characters,
        session.locations,
        "\n".join([action.instruction, idea_text, chapter.title, chapter_text]),
        session.recent_text,
        session.settings.context,
        continuity_rules=session.continuity_rules,
    )
    prompt = build_action_prompt(
        action=action,
        book_title=session.book_title,
        chapter_title=chapter.title,
        chapter_text=chapter_text,
        language=session.settings.language,
        length_preset=chapter.length_preset,
        foundation=session.foundation,
        story_context=format_story_context(ctx),
        idea_text=idea_text,
        book_text=session.book_text,
    )
    session.emit("action_started", "Editor", {"action": action.id, "chapter_id": chapter.id})
    output = await session.generate(prompt)

    if not action.modifies_text:
        return ActionResult(action_id=action.id, chapter=chapter, applied=False, text=output)

    # Length intent is read from what the user typed, else from the action label.
    instruction = idea_text.strip() or action.label
    outcome = await apply_guarded_write(
        session,
        chapter,
        output,
        instruction=instruction,
        action_kind=action.id,
        reason=action.label,
        review_title=action.label,
    )
    if outcome is None:
        return ActionResult(action_id=action.id, chapter=chapter, applied=False)
    return ActionResult(
        action_id=action.id,
        chapter=outcome.chapter,
        applied=True,
        text=outcome.chapter.plain_text,
        summary_text=outcome.summary_text,
    )
