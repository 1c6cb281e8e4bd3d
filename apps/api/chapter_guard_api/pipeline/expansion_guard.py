from __future__ import annotations

import logging

from ..util import count_words
from .length_policy import resolve_minimum_words, should_enforce_expansion
from .prompts import build_expansion_recovery_prompt
from .session import GuardResult, PipelineSession
from .structured_output import split_summary


logger = logging.getLogger(__name__)

AGENT = "ExpansionGuard"


async def enforce_expansion(
    session: PipelineSession,
    candidate_text: str,
    original_text: str,
    instruction: str,
    action_kind: str | None = None,
) -> GuardResult:
    """
    Keep an "expand" edit from shrinking the chapter.

    At most one recovery generation per call. When nothing reaches the floor
    the longer text is accepted rather than blocking the pipeline.
    """

    split = split_summary(candidate_text)
    candidate = split.clean_text or (candidate_text or "").strip()
    summary = split.summary_text

    if not should_enforce_expansion(action_kind, instruction):
        return GuardResult(text=candidate, summary_text=summary, corrected=False)

    minimum = resolve_minimum_words(instruction, original_text)
    candidate_words = count_words(candidate)
    if minimum <= 0 or candidate_words >= minimum:
        return GuardResult(text=candidate, summary_text=summary, corrected=False)

    logger.warning("candidate below floor (%s < %s words), issuing one recovery", candidate_words, minimum)
    session.emit(
        "length_recovery",
        AGENT,
        {"minimum_words": minimum, "candidate_words": candidate_words, "original_words": count_words(original_text)},
    )

    prompt = build_expansion_recovery_prompt(
        minimum_words=minimum,
        original_text=original_text,
        candidate_text=candidate,
        instruction=instruction,
        language=session.settings.language,
    )
    raw = await session.generate(prompt)
    recovered_split = split_summary(raw)
    recovered = recovered_split.clean_text or raw.strip()
    recovered_words = count_words(recovered)

    if recovered_words >= minimum:
        outcome, result = "recovered", GuardResult(
            text=recovered, summary_text=recovered_split.summary_text or summary, corrected=True
        )
    elif count_words(original_text) >= minimum:
        outcome, result = "kept_original", GuardResult(
            text=(original_text or "").strip(), summary_text="", corrected=True
        )
    elif recovered_words > candidate_words:
        outcome, result = "best_effort", GuardResult(
            text=recovered, summary_text=recovered_split.summary_text or summary, corrected=False
        )
    else:
        outcome, result = "best_effort", GuardResult(text=candidate, summary_text=summary, corrected=False)

    session.emit(
        "length_recovery_result",
        AGENT,
        {"outcome": outcome, "words": count_words(result.text), "minimum_words": minimum},
    )
    return result
