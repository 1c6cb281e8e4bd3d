from __future__ import annotations

import logging

from .context_selector import format_story_context, select_story_context
from .prompts import build_continuity_prompt
from .session import GuardResult, PipelineSession
from .structured_output import Malformed, continuity_fields, parse_continuity, split_summary


logger = logging.getLogger(__name__)

AGENT = "ContinuityGuard"


async def enforce_continuity(
    session: PipelineSession,
    original_text: str,
    candidate_text: str,
    instruction: str,
    chapter_title: str | None,
    recent_text: str = "",
) -> GuardResult:
    """
    One verification round against the story bible.

    PASS keeps the candidate verbatim; FAIL substitutes the model's correction.
    `chapter_title=None` means there is no active chapter to check against.
    """

    candidate = candidate_text or ""
    if not session.settings.continuity_guard_enabled or chapter_title is None or not candidate.strip():
        return GuardResult(text=candidate, corrected=False)

    query = "\n".join([instruction or "", chapter_title, original_text or "", candidate])
    ctx = select_story_context(
        session.characters,
        session.locations,
        query,
        recent_text,
        session.settings.context,
        continuity_rules=session.continuity_rules,
    )
    prompt = build_continuity_prompt(
        instruction=instruction,
        chapter_title=chapter_title,
        story_context=format_story_context(ctx),
        original_text=original_text or "",
        candidate_text=candidate,
        recent_text=recent_text or "",
        language=session.settings.language,
    )
    raw = await session.generate(prompt)
    parsed = parse_continuity(raw)
    if isinstance(parsed, Malformed):
        logger.warning("continuity verdict missing, treating as PASS")
        session.emit("malformed_output", AGENT, {"expected": "ESTADO: PASS|FAIL", "chars": len(parsed.raw_text)})

    verdict, reason, text = continuity_fields(parsed)
    if verdict != "FAIL":
        session.emit("continuity_checked", AGENT, {"verdict": "PASS"})
        return GuardResult(text=candidate, summary_text=reason, corrected=False)

    corrected = split_summary(text).clean_text or text.strip()
    if not corrected:
        logger.warning("continuity FAIL without corrected text, keeping candidate")
        session.emit("continuity_checked", AGENT, {"verdict": "FAIL", "reason": reason, "empty_text": True})
        return GuardResult(text=candidate, summary_text=reason, corrected=False)

    logger.info("continuity FAIL, substituting corrected text")
    session.emit("continuity_corrected", AGENT, {"reason": reason})
    return GuardResult(text=corrected, summary_text=reason, corrected=True)
