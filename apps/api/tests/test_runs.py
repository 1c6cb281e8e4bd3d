from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from chapter_guard_api.llm import ModelUnavailable
from chapter_guard_api.main import app
from conftest import FakeModelClient


def _read_events(res) -> list[dict]:
    events: list[dict] = []
    for raw in res.iter_lines():
        line = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)
        if not line.startswith("data: "):
            continue
        events.append(json.loads(line[len("data: ") :]))
    return events


def _setup(client: TestClient, ai: dict | None = None) -> tuple[str, str]:
    book = client.post("/api/books", json={"title": "Corridas"}).json()
    if ai is not None:
        client.patch(f"/api/books/{book['id']}", json={"settings": {"ai": ai}})
    ch = client.get(f"/api/books/{book['id']}/chapters").json()[0]
    client.put(f"/api/books/{book['id']}/chapters/{ch['id']}", json={"content": "<p>Ana camina sola.</p>"})
    return book["id"], ch["id"]


def _patch_client(monkeypatch: pytest.MonkeyPatch, fake: FakeModelClient) -> None:
    import chapter_guard_api.routers.runs as runs_mod

    monkeypatch.setattr(runs_mod, "build_model_client", lambda cfg: fake)


def test_action_run_streams_trace_and_saves(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeModelClient(
        [
            "<think>plan</think>\nAna camina sola por el puerto.\n\nResumen de cambios:\n- ritmo",
            "ESTADO: PASS\nRAZON: sin contradicciones\nTEXTO:\n",
        ]
    )
    _patch_client(monkeypatch, fake)

    with TestClient(app) as client:
        book_id, chapter_id = _setup(client)
        with client.stream(
            "POST",
            f"/api/books/{book_id}/runs/stream",
            json={"kind": "action", "action": "polish-style", "chapter_id": chapter_id},
        ) as res:
            assert res.status_code == 200
            events = _read_events(res)

        types = [e["type"] for e in events]
        assert types[0] == "run_started"
        assert types[-1] == "run_completed"
        assert "continuity_checked" in types
        assert "chapter_saved" in types
        artifact = next(e for e in events if e["type"] == "artifact")
        assert artifact["data"]["chapter"]["content"] == "<p>Ana camina sola por el puerto.</p>"
        assert artifact["data"]["summary"] == "- ritmo"

        ch = client.get(f"/api/books/{book_id}/chapters/{chapter_id}").json()
        assert ch["content"] == "<p>Ana camina sola por el puerto.</p>"
        snaps = client.get(f"/api/books/{book_id}/chapters/{chapter_id}/snapshots").json()
        assert [s["reason"] for s in snaps] == ["Pulir estilo"]

        runs = client.get(f"/api/books/{book_id}/runs").json()
        assert runs[0]["status"] == "completed"
        persisted = client.get(f"/api/runs/{runs[0]['id']}/events").json()
        assert [e["event_type"] for e in persisted] == types


def test_feedback_action_never_writes(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_client(monkeypatch, FakeModelClient(["Buen ritmo, falta conflicto."]))
    with TestClient(app) as client:
        book_id, chapter_id = _setup(client)
        with client.stream(
            "POST",
            f"/api/books/{book_id}/runs/stream",
            json={"kind": "action", "action": "feedback-chapter", "chapter_id": chapter_id},
        ) as res:
            events = _read_events(res)

        artifact = next(e for e in events if e["type"] == "artifact")
        assert artifact["data"] == {"artifact_type": "feedback", "action": "feedback-chapter", "text": "Buen ritmo, falta conflicto."}
        assert client.get(f"/api/books/{book_id}/chapters/{chapter_id}/snapshots").json() == []


def test_chat_run_uses_continuation_agent(monkeypatch: pytest.MonkeyPatch) -> None:
    replies = [f"ESTADO: CONTINUE\nRESUMEN: ronda {i}\nTEXTO:\nAna camina sola, ronda {i}." for i in range(1, 5)]
    fake = FakeModelClient(replies)
    _patch_client(monkeypatch, fake)

    ai = {"continuousAgentEnabled": True, "continuousAgentMaxRounds": 2, "continuityGuardEnabled": False}
    with TestClient(app) as client:
        book_id, chapter_id = _setup(client, ai)
        with client.stream(
            "POST",
            f"/api/books/{book_id}/runs/stream",
            json={"kind": "chat", "chapter_id": chapter_id, "message": "segui la escena"},
        ) as res:
            events = _read_events(res)

        assert [e["data"]["round"] for e in events if e["type"] == "round_started"] == [1, 2]
        assert len(fake.prompts) == 2
        artifact = next(e for e in events if e["type"] == "artifact")
        assert artifact["data"]["state"] == "DONE"

        ch = client.get(f"/api/books/{book_id}/chapters/{chapter_id}").json()
        assert ch["content"] == "<p>Ana camina sola, ronda 2.</p>"

        chat = client.get(f"/api/books/{book_id}/chat", params={"chapter_id": chapter_id}).json()
        assert [m["role"] for m in chat] == ["user", "assistant"]
        assert chat[1]["content"] == "Resumen de cambios:\nronda 2"


def test_model_unavailable_fails_run_without_writing(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_client(monkeypatch, FakeModelClient([ModelUnavailable("ollama_timeout")]))
    with TestClient(app) as client:
        book_id, chapter_id = _setup(client)
        with client.stream(
            "POST",
            f"/api/books/{book_id}/runs/stream",
            json={"kind": "action", "action": "rewrite-tone", "chapter_id": chapter_id},
        ) as res:
            events = _read_events(res)

        error = next(e for e in events if e["type"] == "run_error")
        assert error["data"]["error"] == "ollama_timeout"
        assert client.get(f"/api/books/{book_id}/runs").json()[0]["status"] == "failed"
        ch = client.get(f"/api/books/{book_id}/chapters/{chapter_id}").json()
        assert ch["content"] == "<p>Ana camina sola.</p>"


def test_run_request_validation() -> None:
    with TestClient(app) as client:
        book_id, chapter_id = _setup(client)
        url = f"/api/books/{book_id}/runs/stream"
        assert client.post(url, json={"kind": "demo", "chapter_id": chapter_id}).status_code == 400
        assert client.post(url, json={"kind": "action", "action": "nope", "chapter_id": chapter_id}).status_code == 400
        assert client.post(url, json={"kind": "chat", "chapter_id": chapter_id}).status_code == 400
        assert client.post(url, json={"kind": "chat", "chapter_id": "missing", "message": "x"}).status_code == 404

        with app.state.registry.hold_chapter(chapter_id):
            res = client.post(url, json={"kind": "chat", "chapter_id": chapter_id, "message": "x"})
            assert res.status_code == 409


def test_chat_without_auto_apply_only_answers(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeModelClient(["Le falta un conflicto claro."])
    _patch_client(monkeypatch, fake)
    with TestClient(app) as client:
        book_id, chapter_id = _setup(client, {"autoApplyChatChanges": False})
        with client.stream(
            "POST",
            f"/api/books/{book_id}/runs/stream",
            json={"kind": "chat", "chapter_id": chapter_id, "message": "que opinas?"},
        ) as res:
            events = _read_events(res)

        assert events[0]["data"]["applies_changes"] is False
        artifact = next(e for e in events if e["type"] == "artifact")
        assert artifact["data"] == {"artifact_type": "chat_answer", "scope": "chapter", "text": "Le falta un conflicto claro."}
        assert "chapter_saved" not in [e["type"] for e in events]

        ch = client.get(f"/api/books/{book_id}/chapters/{chapter_id}").json()
        assert ch["content"] == "<p>Ana camina sola.</p>"
        assert client.get(f"/api/books/{book_id}/chapters/{chapter_id}/snapshots").json() == []
        chat = client.get(f"/api/books/{book_id}/chat", params={"chapter_id": chapter_id}).json()
        assert [m["content"] for m in chat] == ["que opinas?", "Le falta un conflicto claro."]


def test_book_scope_chat_rewrites_every_chapter(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeModelClient(["Ana camina sola por el puerto.", "Marta espera en el faro."])
    _patch_client(monkeypatch, fake)
    with TestClient(app) as client:
        book_id, first_id = _setup(client, {"continuityGuardEnabled": False})
        second = client.post(f"/api/books/{book_id}/chapters", json={"content": "<p>Marta espera.</p>"}).json()
        with client.stream(
            "POST",
            f"/api/books/{book_id}/runs/stream",
            json={"kind": "chat", "scope": "book", "message": "nombra los lugares"},
        ) as res:
            events = _read_events(res)

        assert events[-1]["data"]["status"] == "completed"
        artifact = next(e for e in events if e["type"] == "artifact")
        assert artifact["data"]["artifact_type"] == "book"
        assert artifact["data"]["writes"] == 2

        assert client.get(f"/api/books/{book_id}/chapters/{first_id}").json()["content"] == "<p>Ana camina sola por el puerto.</p>"
        assert client.get(f"/api/books/{book_id}/chapters/{second['id']}").json()["content"] == "<p>Marta espera en el faro.</p>"
        snaps = client.get(f"/api/books/{book_id}/chapters/{second['id']}/snapshots").json()
        assert [s["reason"] for s in snaps] == ["Chat auto-aplicar libro cap 2 iter 1/1"]

        book_chat = client.get(f"/api/books/{book_id}/chat", params={"scope": "book"}).json()
        assert [m["role"] for m in book_chat] == ["user", "assistant"]
        assert book_chat[1]["content"].startswith("Cambios aplicados automaticamente en todo el libro (2 capitulos")
        assert client.get(f"/api/books/{book_id}/chat", params={"chapter_id": first_id}).json() == []


def test_book_scope_chat_rejected_when_any_chapter_is_busy(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_client(monkeypatch, FakeModelClient())
    with TestClient(app) as client:
        book_id, _ = _setup(client)
        second = client.post(f"/api/books/{book_id}/chapters", json={"content": "<p>Marta espera.</p>"}).json()
        url = f"/api/books/{book_id}/runs/stream"
        with app.state.registry.hold_chapter(second["id"]):
            res = client.post(url, json={"kind": "chat", "scope": "book", "message": "x"})
            assert res.status_code == 409
        assert client.post(url, json={"kind": "chat", "scope": "libro", "message": "x"}).status_code == 400


def test_story_bible_auto_sync_after_write(monkeypatch: pytest.MonkeyPatch) -> None:
    text = "Ana llego al Puerto Viejo con la doctora Marta. Ana saludo a la doctora Marta junto al Puerto Viejo."
    _patch_client(monkeypatch, FakeModelClient([text]))
    with TestClient(app) as client:
        book_id, chapter_id = _setup(client, {"storyBibleAutoSync": True, "continuityGuardEnabled": False})
        client.post(f"/api/books/{book_id}/story-bible/entities", json={"kind": "character", "name": "Ana"})
        with client.stream(
            "POST",
            f"/api/books/{book_id}/runs/stream",
            json={"kind": "chat", "chapter_id": chapter_id, "message": "nombra los lugares"},
        ) as res:
            events = _read_events(res)

        synced = next(e for e in events if e["type"] == "story_bible_synced")
        assert sorted(a["name"] for a in synced["data"]["added"]) == ["Marta", "Puerto Viejo"]
        bible = client.get(f"/api/books/{book_id}/story-bible").json()
        assert [loc["name"] for loc in bible["locations"]] == ["Puerto Viejo"]
