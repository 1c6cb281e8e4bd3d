"""Prompt builders. Spanish by default, matching the default system prompt."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..config import get_length_profile


@dataclass(frozen=True)
class AiAction:
    id: str
    label: str
    instruction: str
    modifies_text: bool = True


AI_ACTIONS: dict[str, AiAction] = {
    a.id: a
    for a in (
        AiAction(
            "draft-from-idea",
            "Escribir desde idea",
            "Escribir o reescribir el capitulo desde la idea base del libro, manteniendo tono y direccion narrativa.",
        ),
        AiAction(
            "polish-style",
            "Pulir estilo",
            "Pulir estilo manteniendo significado. Mejora claridad, ritmo y elimina repeticiones.",
        ),
        AiAction(
            "rewrite-tone",
            "Reescribir tono",
            "Reescribir manteniendo tono y voz del autor. Evita tecnicismos innecesarios.",
        ),
        AiAction(
            "expand-examples",
            "Expandir ejemplos",
            "Expandir el contenido con ejemplos concretos y naturales, sin desviarte del tema.",
        ),
        AiAction(
            "shorten-20",
            "Acortar 20%",
            "Acortar aproximadamente un 20% manteniendo ideas principales y fluidez.",
        ),
        AiAction(
            "consistency",
            "Consistencia",
            "Corregir inconsistencias de terminologia, metaforas y voz narrativa de forma uniforme.",
        ),
        AiAction(
            "improve-transitions",
            "Mejorar transiciones",
            "Mejorar transiciones entre ideas y parrafos para lograr lectura fluida y cohesion.",
        ),
        AiAction(
            "deepen-argument",
            "Profundizar argumento",
            "Profundizar el argumento con matices y mayor precision conceptual sin extender innecesariamente.",
        ),
        AiAction(
            "align-with-foundation",
            "Alinear con base",
            "Reescribir para alinear estrictamente con la base del libro: idea central, promesa, voz y reglas de estilo.",
        ),
        AiAction(
            "feedback-chapter",
            "Devolucion capitulo",
            "Dar devolucion editorial del capitulo: fortalezas, debilidades, coherencia y mejoras accionables.",
            modifies_text=False,
        ),
        AiAction(
            "feedback-book",
            "Devolucion libro",
            "Dar devolucion editorial del libro completo: estructura, arco narrativo, coherencia, ritmo y mejoras accionables.",
            modifies_text=False,
        ),
    )
}

LANGUAGE_LABELS = {
    "es": "Español neutro",
    "en": "English",
    "pt": "Português",
    "fr": "Français",
    "it": "Italiano",
    "de": "Deutsch",
    "ca": "Català",
    "gl": "Galego",
    "eu": "Euskara",
}

_FOUNDATION_FIELDS = (
    ("Idea central", "central_idea"),
    ("Promesa", "promise"),
    ("Audiencia", "audience"),
    ("Voz narrativa", "narrative_voice"),
    ("Reglas de estilo", "style_rules"),
    ("Notas de estructura", "structure_notes"),
    ("Glosario preferido", "glossary_preferred"),
    ("Glosario a evitar", "glossary_avoid"),
)

CONTINUATION_FORMAT = "\n".join(
    [
        "Salida obligatoria con este formato exacto:",
        "ESTADO: DONE o CONTINUE",
        "RESUMEN: breve",
        "TEXTO:",
        "<texto final del capitulo>",
    ]
)

CONTINUITY_FORMAT = "\n".join(
    [
        "Salida obligatoria con este formato exacto:",
        "ESTADO: PASS o FAIL",
        "RAZON: breve",
        "TEXTO:",
        "<texto final del capitulo>",
    ]
)


def language_instruction(code: str | None) -> str:
    normalized = (code or "").strip().lower() or "es"
    return f"Idioma de salida obligatorio: {LANGUAGE_LABELS.get(normalized, normalized)}."


def length_instruction(preset: object) -> str:
    p = get_length_profile(preset)
    return f"Objetivo de extension del capitulo: {p.label} ({p.min_words}-{p.max_words} palabras aprox)."


def foundation_block(foundation: dict[str, Any] | None) -> str:
    f = foundation if isinstance(foundation, dict) else {}
    lines = ["Base fija del libro:"]
    for label, key in _FOUNDATION_FIELDS:
        value = f.get(key)
        lines.append(f"- {label}: {value.strip() if isinstance(value, str) and value.strip() else '(sin definir)'}")
    return "\n".join(lines)


def build_action_prompt(
    *,
    action: AiAction,
    book_title: str,
    chapter_title: str,
    chapter_text: str,
    language: str,
    length_preset: str,
    foundation: dict[str, Any] | None,
    story_context: str = "",
    idea_text: str = "",
    book_text: str = "",
) -> str:
    head = [f"Libro: {book_title}"]
    if action.id != "feedback-book":
        head.append(f"Capitulo: {chapter_title}")
    head += [foundation_block(foundation), language_instruction(language)]
    if action.id != "feedback-book":
        head.append(length_instruction(length_preset))
    if story_context:
        head += ["", story_context]
    head += [f"Accion: {action.instruction}", ""]

    if action.id == "feedback-book":
        return "\n".join(head + ["Contenido del libro:", book_text])
    if action.id == "feedback-chapter":
        return "\n".join(head + ["Contenido del capitulo:", chapter_text])
    if action.id == "draft-from-idea":
        return "\n".join(
            head
            + [
                "Idea del usuario para este capitulo:",
                idea_text.strip() or "(sin idea explicita)",
                "",
                "Texto actual del capitulo (si existe):",
                chapter_text.strip() or "(vacio)",
                "",
                "Si el texto actual esta vacio, generar un borrador completo. Si no esta vacio, rehacerlo y mejorarlo.",
            ]
        )
    return "\n".join(head + ["Texto objetivo:", chapter_text])


def build_round_prompt(
    *,
    continuous: bool,
    instruction: str,
    book_title: str,
    chapter_title: str,
    chapter_text: str,
    language: str,
    length_preset: str,
    foundation: dict[str, Any] | None,
    round_no: int,
    max_rounds: int,
    previous_summary: str = "",
    story_context: str = "",
    book_text: str = "",
    chapter_position: tuple[int, int] | None = None,
) -> str:
    """One continuation round (status-token loop) or one fixed auto-apply iteration."""
    chapter_line = f"Capitulo: {chapter_title}"
    if chapter_position:
        chapter_line += f" ({chapter_position[0]}/{chapter_position[1]})"
    if continuous:
        lines = [
            "MODO: agente continuo para capitulo, sin pedir confirmaciones.",
            f"Libro: {book_title}",
            language_instruction(language),
            foundation_block(foundation),
            chapter_line,
            length_instruction(length_preset),
            f"Ronda: {round_no}/{max_rounds}",
        ]
    else:
        lines = [
            "MODO: reescritura automatica sin pedir confirmaciones.",
            f"Libro: {book_title}",
            language_instruction(language),
            foundation_block(foundation),
            chapter_line,
            length_instruction(length_preset),
            f"Iteracion: {round_no}/{max_rounds}",
        ]
    if story_context:
        lines += ["", story_context]
    lines += ["", "Instruccion del usuario:", instruction]
    if book_text:
        lines += ["", "Contexto del libro completo:", book_text]
    lines += ["", "Texto actual del capitulo:", chapter_text]
    if continuous:
        lines += ["", "Resumen previo (si existe):", previous_summary or "(sin resumen previo)", "", CONTINUATION_FORMAT]
    else:
        lines += [
            "",
            "Reglas de salida:",
            "- Aplica los cambios directamente.",
            "- No pidas confirmacion.",
            "- Devuelve solo el texto final del capitulo.",
        ]
    return "\n".join(lines)


def build_chat_prompt(
    *,
    scope: str,
    message: str,
    book_title: str,
    language: str,
    foundation: dict[str, Any] | None,
    chapter_title: str | None = None,
    length_preset: str | None = None,
    chapter_text: str = "",
    book_text: str = "",
    history: str = "",
    story_context: str = "",
) -> str:
    """Conversational answer; nothing is applied to the chapter."""
    lines = [
        f"Libro: {book_title}",
        foundation_block(foundation),
        language_instruction(language),
        f"Capitulo activo: {chapter_title}" if chapter_title else "Sin capitulo activo",
    ]
    if scope == "chapter" and chapter_title:
        lines.append(length_instruction(length_preset))
    if story_context:
        lines += ["", story_context]
    lines += [
        "",
        "Contexto global del libro:" if scope == "book" else "Contexto del capitulo:",
        book_text if scope == "book" else chapter_text,
        "",
        "Historial reciente:",
        history.strip() or "(vacio)",
        "",
        "Mensaje actual del usuario:",
        message,
    ]
    return "\n".join(lines)


def build_expansion_recovery_prompt(
    *, minimum_words: int, original_text: str, candidate_text: str, instruction: str, language: str
) -> str:
    return "\n".join(
        [
            "MODO: correccion de extension, sin pedir confirmaciones.",
            language_instruction(language),
            f"La version propuesta es demasiado corta. Debe tener al menos {minimum_words} palabras.",
            "Reescribe el capitulo completo cumpliendo la instruccion y ese minimo, sin perder contenido del original.",
            "",
            "Instruccion del usuario:",
            instruction or "(sin instruccion)",
            "",
            "Texto original:",
            original_text,
            "",
            "Version propuesta (demasiado corta):",
            candidate_text,
            "",
            "Devuelve solo el texto final del capitulo.",
        ]
    )


def build_continuity_prompt(
    *,
    instruction: str,
    chapter_title: str,
    story_context: str,
    original_text: str,
    candidate_text: str,
    recent_text: str,
    language: str,
) -> str:
    return "\n".join(
        [
            "MODO: verificacion de continuidad narrativa.",
            language_instruction(language),
            f"Capitulo: {chapter_title}",
            "Revisa si la version propuesta contradice personajes, lugares, reglas de continuidad o hechos del texto original.",
            "Si no hay contradicciones responde PASS y copia la version propuesta sin cambios.",
            "Si hay contradicciones responde FAIL y devuelve la version corregida con el minimo de cambios.",
            "",
            "Instruccion del usuario:",
            instruction or "(sin instruccion)",
            "",
            story_context or "(sin contexto de historia)",
            "",
            "Conversacion reciente:",
            recent_text.strip() or "(vacia)",
            "",
            "Texto original:",
            original_text,
            "",
            "Version propuesta:",
            candidate_text,
            "",
            CONTINUITY_FORMAT,
        ]
    )
