from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


DEFAULT_SYSTEM_PROMPT = (
    "Sos un editor literario experto. Tu tono debe ser intimo, sobrio y reflexivo. "
    "No uses estilo de autoayuda ni new age.\n"
    "No pidas confirmaciones ni hagas preguntas: aplica los cambios directamente.\n"
    "No agregues relleno ni explicaciones innecesarias.\n"
    "Si el cambio es grande, igual hacelo y al final agrega exactamente 5 bullets con resumen de cambios.\n"
    "Devolve solo el texto final (y el resumen cuando corresponda)."
)


@dataclass(frozen=True)
class LengthProfile:
    preset: str
    label: str
    min_words: int
    max_words: int


LENGTH_PROFILES: dict[str, LengthProfile] = {
    "short": LengthProfile("short", "Corta", 900, 1300),
    "medium": LengthProfile("medium", "Media", 1500, 2200),
    "long": LengthProfile("long", "Larga", 2500, 3500),
}

# Spanish preset names used by older book files.
_PRESET_ALIASES = {"corta": "short", "media": "medium", "larga": "long"}


def resolve_length_preset(value: object) -> str:
    if isinstance(value, str):
        v = value.strip().lower()
        v = _PRESET_ALIASES.get(v, v)
        if v in LENGTH_PROFILES:
            return v
    return "medium"


def get_length_profile(value: object) -> LengthProfile:
    return LENGTH_PROFILES[resolve_length_preset(value)]


@dataclass(frozen=True)
class ContextOptions:
    max_characters: int = 8
    max_locations: int = 6
    recency_weight: float = 1.0


@dataclass(frozen=True)
class GuardSettings:
    model: str = "llama3.2:3b"
    temperature: float = 0.6
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    language: str = "es"
    auto_versioning: bool = True
    ai_safe_mode: bool = False
    continuity_guard_enabled: bool = True
    continuous_agent_enabled: bool = False
    continuous_agent_max_rounds: int = 3
    chat_apply_iterations: int = 1
    auto_apply_chat_changes: bool = True
    story_bible_auto_sync: bool = False
    context: ContextOptions = field(default_factory=ContextOptions)


def _coerce_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("1", "true", "yes", "on", "si", "sí"):
            return True
        if v in ("0", "false", "no", "off"):
            return False
    return default


def _coerce_int(value: object, default: int, lo: int, hi: int) -> int:
    try:
        i = int(value) if value is not None else default
    except Exception:
        i = default
    return max(lo, min(hi, i))


def _coerce_float(value: object, default: float, lo: float, hi: float) -> float:
    try:
        f = float(value) if value is not None else default
    except Exception:
        f = default
    if f != f:  # NaN
        f = default
    return max(lo, min(hi, f))


def resolve_guard_settings(book_settings: dict[str, Any] | None) -> GuardSettings:
    """
    Read the per-book AI config from book.settings["ai"].

    Every field is optional; unusable values fall back to defaults instead of
    failing the request. Both snake_case and the camelCase keys written by the
    desktop app are accepted.
    """

    ai = (book_settings or {}).get("ai") if isinstance(book_settings, dict) else None
    if not isinstance(ai, dict):
        ai = {}

    def pick(*keys: str) -> object:
        for k in keys:
            if k in ai and ai[k] is not None:
                return ai[k]
        return None

    ctx_raw = ai.get("context") if isinstance(ai.get("context"), dict) else {}
    defaults = GuardSettings()
    dctx = defaults.context

    model = pick("model")
    system_prompt = pick("system_prompt", "systemPrompt")
    language = pick("language")

    return GuardSettings(
        model=str(model).strip() if isinstance(model, str) and model.strip() else defaults.model,
        temperature=_coerce_float(pick("temperature"), defaults.temperature, 0.0, 2.0),
        system_prompt=(
            str(system_prompt) if isinstance(system_prompt, str) and system_prompt.strip() else defaults.system_prompt
        ),
        language=str(language).strip().lower() if isinstance(language, str) and language.strip() else defaults.language,
        auto_versioning=_coerce_bool(pick("auto_versioning", "autoVersioning"), defaults.auto_versioning),
        ai_safe_mode=_coerce_bool(pick("ai_safe_mode", "aiSafeMode"), defaults.ai_safe_mode),
        continuity_guard_enabled=_coerce_bool(
            pick("continuity_guard_enabled", "continuityGuardEnabled"), defaults.continuity_guard_enabled
        ),
        continuous_agent_enabled=_coerce_bool(
            pick("continuous_agent_enabled", "continuousAgentEnabled"), defaults.continuous_agent_enabled
        ),
        continuous_agent_max_rounds=_coerce_int(
            pick("continuous_agent_max_rounds", "continuousAgentMaxRounds"),
            defaults.continuous_agent_max_rounds,
            1,
            12,
        ),
        chat_apply_iterations=_coerce_int(
            pick("chat_apply_iterations", "chatApplyIterations"), defaults.chat_apply_iterations, 1, 10
        ),
        auto_apply_chat_changes=_coerce_bool(
            pick("auto_apply_chat_changes", "autoApplyChatChanges"), defaults.auto_apply_chat_changes
        ),
        story_bible_auto_sync=_coerce_bool(
            pick("story_bible_auto_sync", "storyBibleAutoSync"), defaults.story_bible_auto_sync
        ),
        context=ContextOptions(
            max_characters=_coerce_int(
                ctx_raw.get("max_characters", ctx_raw.get("maxCharacters")), dctx.max_characters, 1, 100
            ),
            max_locations=_coerce_int(
                ctx_raw.get("max_locations", ctx_raw.get("maxLocations")), dctx.max_locations, 1, 100
            ),
            recency_weight=_coerce_float(
                ctx_raw.get("recency_weight", ctx_raw.get("recencyWeight")), dctx.recency_weight, 0.0, 2.0
            ),
        ),
    )
