from __future__ import annotations

from chapter_guard_api.pipeline.structured_output import (
    Malformed,
    Parsed,
    continuation_fields,
    continuity_fields,
    parse_continuation,
    parse_continuity,
    split_summary,
)


def test_parse_continuation_reads_all_markers() -> None:
    raw = "ESTADO: done\nRESUMEN: cerre la escena\nTEXTO:\nAna llega al puerto.\n\nLlueve."
    result = parse_continuation(raw)
    assert isinstance(result, Parsed)
    assert result.status == "DONE"
    assert result.summary == "cerre la escena"
    assert result.text == "Ana llega al puerto.\n\nLlueve."


def test_parse_continuation_without_markers_is_malformed_and_defaults_to_continue() -> None:
    result = parse_continuation("Solo texto nuevo del capitulo.")
    assert isinstance(result, Malformed)
    assert continuation_fields(result) == ("CONTINUE", "", "Solo texto nuevo del capitulo.")


def test_parse_continuation_strips_think_blocks_and_fences() -> None:
    raw = "<think>plan</think>\n```\nESTADO: CONTINUE\nRESUMEN: x\nTEXTO:\nHola.\n```"
    status, summary, text = continuation_fields(parse_continuation(raw))
    assert (status, summary, text) == ("CONTINUE", "x", "Hola.")


def test_status_without_text_block_uses_remaining_lines() -> None:
    result = parse_continuation("ESTADO: DONE\nRESUMEN: listo\nAna duerme.")
    assert isinstance(result, Parsed)
    assert result.text == "Ana duerme."


def test_parse_continuity_fail_and_missing_verdict() -> None:
    result = parse_continuity("estado: FAIL\nRAZON: Ana tiene ojos verdes\nTEXTO:\nAna mira con ojos verdes.")
    assert continuity_fields(result) == ("FAIL", "Ana tiene ojos verdes", "Ana mira con ojos verdes.")

    verdict, reason, text = continuity_fields(parse_continuity("Texto sin veredicto."))
    assert verdict == "PASS"
    assert reason == ""
    assert text == "Texto sin veredicto."


def test_split_summary_separates_trailing_bullets() -> None:
    parsed = split_summary(
        "Texto final del capitulo.\n\nResumen de cambios:\n- Ajuste de ritmo\n- Mejor transicion\n"
        "- Voz consistente\n- Menos repeticion\n- Mejor cierre"
    )
    assert parsed.clean_text == "Texto final del capitulo."
    assert len(parsed.summary_bullets) == 5
    assert "Ajuste de ritmo" in parsed.summary_text


def test_split_summary_without_marker_keeps_text() -> None:
    parsed = split_summary("  Solo texto.  ")
    assert parsed.clean_text == "Solo texto."
    assert parsed.summary_text == ""
    assert parsed.summary_bullets == []
