from __future__ import annotations

import asyncio
import logging
import os
import random
from dataclasses import dataclass, replace
from typing import Any, Callable, Literal, Protocol

import httpx


logger = logging.getLogger(__name__)

Provider = Literal["ollama", "openai"]

_DEFAULT_OLLAMA_BASE = "http://localhost:11434"
_DEFAULT_OPENAI_BASE = "https://api.openai.com/v1"


class LLMError(RuntimeError):
    pass


class ModelUnavailable(LLMError):
    """Network failure or timeout talking to the model service."""


@dataclass(frozen=True)
class LLMConfig:
    provider: Provider
    model: str
    base_url: str
    api_key: str | None = None
    temperature: float = 0.6
    max_tokens: int = 1200
    timeout_s: float = 120.0
    response_mode: str = "balanced"  # fast|balanced|quality

    def __repr__(self) -> str:  # pragma: no cover
        # Avoid leaking secrets if someone prints the config.
        redacted_key = "***" if self.api_key else None
        return (
            "LLMConfig("
            f"provider={self.provider!r}, "
            f"model={self.model!r}, "
            f"base_url={self.base_url!r}, "
            f"api_key={redacted_key!r}, "
            f"temperature={self.temperature!r}, "
            f"max_tokens={self.max_tokens!r}, "
            f"timeout_s={self.timeout_s!r}, "
            f"response_mode={self.response_mode!r}"
            ")"
        )


def _normalize_base_url(url: str) -> str:
    u = url.strip().rstrip("/")
    if len(u) >= 2 and ((u[0] == u[-1] == '"') or (u[0] == u[-1] == "'")):
        u = u[1:-1].strip().rstrip("/")
    if u and not (u.startswith("http://") or u.startswith("https://")):
        u = "http://" + u.lstrip("/")
    return u


_ENDPOINT_SUFFIXES = (
    "/v1/chat/completions",
    "/chat/completions",
    "/api/generate",
)


def _strip_endpoint_suffix(base_url: str) -> str:
    """
    Users often paste the full endpoint URL (".../v1/chat/completions",
    ".../api/generate") where a base URL is expected.
    """

    u = (base_url or "").strip().rstrip("/")
    for suf in _ENDPOINT_SUFFIXES:
        if u.endswith(suf):
            return u[: -len(suf)].rstrip("/")
    return u


def resolve_llm_config(
    book_settings: dict[str, Any] | None,
    *,
    model: str | None = None,
    temperature: float | None = None,
) -> LLMConfig:
    """
    Resolve the model endpoint from book.settings["llm"] plus environment.

    `model`/`temperature` come from the book's AI settings and take priority
    over the llm block, since that is what the author edits in the UI.
    """

    llm = (book_settings or {}).get("llm") if isinstance(book_settings, dict) else {}
    if not isinstance(llm, dict):
        llm = {}

    provider = str(llm.get("provider") or "ollama").strip().lower()
    if provider not in ("ollama", "openai"):
        provider = "ollama"

    try:
        max_tokens_i = int(llm.get("max_tokens")) if llm.get("max_tokens") is not None else 1200
    except Exception:
        max_tokens_i = 1200

    try:
        timeout_f = float(llm.get("timeout_s")) if llm.get("timeout_s") is not None else 120.0
    except Exception:
        timeout_f = 120.0
    timeout_f = max(5.0, min(timeout_f, 900.0))

    mode = str(llm.get("response_mode") or "balanced").strip().lower()
    if mode not in ("fast", "balanced", "quality"):
        mode = "balanced"

    temp = 0.6 if temperature is None else float(temperature)

    if provider == "openai":
        base_url = llm.get("base_url") or os.getenv("OPENAI_BASE_URL") or _DEFAULT_OPENAI_BASE
        model_name = model or llm.get("model") or os.getenv("OPENAI_MODEL") or "gpt-4o-mini"
        return LLMConfig(
            provider="openai",
            model=str(model_name).strip(),
            base_url=_strip_endpoint_suffix(_normalize_base_url(str(base_url))),
            api_key=os.getenv("OPENAI_API_KEY") or None,
            temperature=temp,
            max_tokens=max_tokens_i,
            timeout_s=timeout_f,
            response_mode=mode,
        )

    base_url = llm.get("base_url") or os.getenv("OLLAMA_BASE_URL") or _DEFAULT_OLLAMA_BASE
    model_name = model or llm.get("model") or "llama3.2:3b"
    return LLMConfig(
        provider="ollama",
        model=str(model_name).strip(),
        base_url=_strip_endpoint_suffix(_normalize_base_url(str(base_url))),
        temperature=temp,
        max_tokens=max_tokens_i,
        timeout_s=timeout_f,
        response_mode=mode,
    )


_PROMPT_BUDGET = {"fast": 12_000, "balanced": 22_000, "quality": 32_000}
_OLLAMA_PROFILE = {
    "fast": {"num_predict": 280, "num_ctx": 3072, "top_k": 35},
    "balanced": {"num_predict": 520, "num_ctx": 6144, "top_k": 40},
    "quality": {"num_predict": 900, "num_ctx": 8192, "top_k": 45},
}
_COMPRESSION_MARKER = "[... contexto intermedio resumido para reducir latencia ...]"


def compress_prompt(prompt: str, mode: str = "balanced") -> str:
    """Keep the head and tail of an oversized prompt; the middle is dropped."""
    normalized = (prompt or "").strip()
    max_chars = _PROMPT_BUDGET.get(mode, _PROMPT_BUDGET["balanced"])
    if len(normalized) <= max_chars:
        return normalized
    head_size = min(5000, int(max_chars * 0.45))
    tail_size = max(2000, max_chars - head_size - 180)
    return f"{normalized[:head_size]}\n\n{_COMPRESSION_MARKER}\n\n{normalized[-tail_size:]}"


async def generate_text(system_prompt: str, user_prompt: str, cfg: LLMConfig) -> str:
    if cfg.provider == "openai" and not cfg.api_key:
        raise LLMError("missing_api_key_for_provider:openai")

    def clip(s: str, max_len: int = 220) -> str:
        ss = (s or "").strip()
        if len(ss) <= max_len:
            return ss
        return ss[: max_len - 3].rstrip() + "..."

    def extract_err_detail(resp: httpx.Response) -> str:
        ctype = (resp.headers.get("content-type") or "").lower()
        try:
            if "application/json" in ctype:
                data = resp.json()
                # OpenAI style: {"error": {"message": "...", ...}}
                if isinstance(data, dict) and isinstance(data.get("error"), dict):
                    msg = data["error"].get("message")
                    if isinstance(msg, str) and msg.strip():
                        return clip(msg)
                # Ollama style: {"error": "model 'x' not found"}
                err = data.get("error") if isinstance(data, dict) else None
                if isinstance(err, str) and err.strip():
                    return clip(err)
        except Exception:
            pass
        # Avoid dumping raw HTML error pages into traces/UI.
        if "text/html" in ctype:
            return "html_error_page"
        try:
            return clip(resp.text)
        except Exception:
            return ""

    def extract_ollama_text(data: Any) -> str:
        if isinstance(data, dict):
            out = data.get("response")
            if isinstance(out, str):
                return out
        return ""

    def extract_chat_text(data: Any) -> str:
        if not isinstance(data, dict):
            return ""
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return ""
        msg = choices[0].get("message")
        if isinstance(msg, dict) and isinstance(msg.get("content"), str):
            return msg["content"]
        txt = choices[0].get("text")
        return txt if isinstance(txt, str) else ""

    prompt = compress_prompt(user_prompt, cfg.response_mode)
    if cfg.provider == "ollama":
        url = f"{cfg.base_url}/api/generate"
        headers: dict[str, str] = {}
        payload: dict[str, Any] = {
            "model": cfg.model,
            "system": system_prompt,
            "prompt": prompt,
            "stream": False,
            "options": {
                **_OLLAMA_PROFILE.get(cfg.response_mode, _OLLAMA_PROFILE["balanced"]),
                "temperature": cfg.temperature,
                "top_p": 0.9,
            },
        }
        parser: Callable[[Any], str] = extract_ollama_text
    else:
        base = cfg.base_url if cfg.base_url.endswith("/v1") else f"{cfg.base_url}/v1"
        url = f"{base}/chat/completions"
        headers = {"Authorization": f"Bearer {cfg.api_key}"}
        payload = {
            "model": cfg.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": cfg.temperature,
            "max_tokens": cfg.max_tokens,
        }
        parser = extract_chat_text

    transient_status = {408, 409, 425, 429, 500, 502, 503, 504}
    max_attempts = 3
    last_err: str | None = None
    unavailable = False

    async with httpx.AsyncClient(timeout=cfg.timeout_s, trust_env=False) as client:
        for attempt in range(1, max_attempts + 1):
            # Timeouts and network failures end the call at once; only HTTP statuses are retried.
            try:
                r = await client.post(url, json=payload, headers=headers)
            except httpx.TimeoutException as e:
                raise ModelUnavailable(f"{cfg.provider}_timeout") from e
            except httpx.RequestError as e:
                raise ModelUnavailable(f"{cfg.provider}_network_error:{type(e).__name__}") from e
            else:
                if r.status_code >= 400:
                    detail = extract_err_detail(r)
                    msg = f"{cfg.provider}_http_{r.status_code}"
                    if detail:
                        msg += f":{detail}"
                    if r.status_code not in transient_status:
                        raise LLMError(msg)
                    last_err = msg
                    unavailable = r.status_code in (502, 503, 504)
                else:
                    try:
                        data = r.json()
                    except Exception:
                        raise LLMError(f"{cfg.provider}_bad_json")
                    content = parser(data)
                    if content.strip():
                        return content
                    # Empty completions happen with overloaded local models; retry.
                    last_err = "empty_completion"
                    unavailable = False

            if attempt < max_attempts:
                backoff = (0.8 * (2 ** (attempt - 1))) + (random.random() * 0.2)
                logger.warning("model call failed (%s), retrying in %.1fs", last_err, backoff)
                await asyncio.sleep(backoff)

    if unavailable:
        raise ModelUnavailable(last_err or f"{cfg.provider}_unavailable")
    raise LLMError(last_err or f"{cfg.provider}_failed")


class ModelClient(Protocol):
    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str,
        temperature: float | None = None,
        model: str | None = None,
    ) -> str: ...


class HttpModelClient:
    """ModelClient backed by `generate_text`."""

    def __init__(self, cfg: LLMConfig) -> None:
        self.cfg = cfg

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str,
        temperature: float | None = None,
        model: str | None = None,
    ) -> str:
        cfg = self.cfg
        if temperature is not None and temperature != cfg.temperature:
            cfg = replace(cfg, temperature=temperature)
        if model and model != cfg.model:
            cfg = replace(cfg, model=model)
        return await generate_text(system_prompt=system_prompt, user_prompt=prompt, cfg=cfg)


def build_model_client(cfg: LLMConfig) -> ModelClient:
    return HttpModelClient(cfg)
