from __future__ import annotations

import asyncio
import json

import httpx
import pytest

import chapter_guard_api.llm as llm_mod
from chapter_guard_api.llm import LLMConfig, LLMError, ModelUnavailable, compress_prompt, resolve_llm_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("OLLAMA_BASE_URL", "OPENAI_BASE_URL", "OPENAI_API_KEY", "OPENAI_MODEL"):
        monkeypatch.delenv(key, raising=False)


def test_defaults_to_local_ollama() -> None:
    cfg = resolve_llm_config(None)
    assert cfg.provider == "ollama"
    assert cfg.base_url == "http://localhost:11434"
    assert cfg.model == "llama3.2:3b"
    assert cfg.timeout_s == 120.0


def test_book_model_and_env_base_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OLLAMA_BASE_URL", "127.0.0.1:11435/api/generate")
    cfg = resolve_llm_config({"llm": {"timeout_s": "1"}}, model="qwen2.5:7b", temperature=0.2)
    assert cfg.base_url == "http://127.0.0.1:11435"
    assert cfg.model == "qwen2.5:7b"
    assert cfg.temperature == 0.2
    assert cfg.timeout_s == 5.0


def test_openai_base_url_strips_full_endpoint_suffix(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    cfg = resolve_llm_config(
        {"llm": {"provider": "openai", "base_url": "https://api.example.com/v1/chat/completions", "model": "gpt-4o-mini"}}
    )
    assert cfg.base_url == "https://api.example.com"
    assert cfg.api_key == "sk-test"


def test_compress_prompt_keeps_head_and_tail() -> None:
    prompt = "H" * 10_000 + "M" * 20_000 + "T" * 10_000
    out = compress_prompt(prompt, "fast")
    assert len(out) < len(prompt)
    assert out.startswith("H" * 5000)
    assert out.endswith("T" * 5000)
    assert "contexto intermedio resumido" in out
    assert compress_prompt("corto", "fast") == "corto"


def _patch_transport(monkeypatch: pytest.MonkeyPatch, handler) -> None:
    real_client = httpx.AsyncClient

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    async def no_sleep(_seconds: float) -> None:
        return None

    monkeypatch.setattr(llm_mod.httpx, "AsyncClient", factory)
    monkeypatch.setattr(llm_mod.asyncio, "sleep", no_sleep)


def test_generate_text_retries_transient_status(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content))
        if len(calls) == 1:
            return httpx.Response(503, text="<html>busy</html>", headers={"content-type": "text/html"})
        return httpx.Response(200, json={"response": "Hola."})

    _patch_transport(monkeypatch, handler)
    cfg = LLMConfig(provider="ollama", model="llama3.2:3b", base_url="http://localhost:11434")
    out = asyncio.run(llm_mod.generate_text("sistema", "prompt", cfg))
    assert out == "Hola."
    assert len(calls) == 2
    assert calls[0]["stream"] is False
    assert calls[0]["system"] == "sistema"


def test_generate_text_network_failure_is_model_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        raise httpx.ConnectError("refused", request=request)

    _patch_transport(monkeypatch, handler)
    cfg = LLMConfig(provider="ollama", model="m", base_url="http://localhost:11434")
    with pytest.raises(ModelUnavailable):
        asyncio.run(llm_mod.generate_text("s", "p", cfg))
    assert len(attempts) == 1


def test_generate_text_timeout_is_not_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        raise httpx.ReadTimeout("slow", request=request)

    _patch_transport(monkeypatch, handler)
    cfg = LLMConfig(provider="ollama", model="m", base_url="http://localhost:11434")
    with pytest.raises(ModelUnavailable) as exc:
        asyncio.run(llm_mod.generate_text("s", "p", cfg))
    assert str(exc.value) == "ollama_timeout"
    assert len(attempts) == 1


def test_generate_text_client_error_is_not_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(404, json={"error": "model 'x' not found"})

    _patch_transport(monkeypatch, handler)
    cfg = LLMConfig(provider="ollama", model="x", base_url="http://localhost:11434")
    with pytest.raises(LLMError) as exc:
        asyncio.run(llm_mod.generate_text("s", "p", cfg))
    assert not isinstance(exc.value, ModelUnavailable)
    assert str(exc.value) == "ollama_http_404:model 'x' not found"
    assert len(attempts) == 1


def test_openai_requires_api_key() -> None:
    cfg = LLMConfig(provider="openai", model="gpt-4o-mini", base_url="https://api.openai.com")
    with pytest.raises(LLMError):
        asyncio.run(llm_mod.generate_text("s", "p", cfg))
