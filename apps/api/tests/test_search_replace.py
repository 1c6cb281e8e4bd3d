from __future__ import annotations

from fastapi.testclient import TestClient

from chapter_guard_api.main import app
from chapter_guard_api.search_replace import SearchOptions, count_matches_in_html, replace_matches_in_html


def test_counts_only_text_nodes() -> None:
    html = '<p class="ana">Ana y ana.</p><p>Banana</p>'
    assert count_matches_in_html(html, "ana", SearchOptions()) == 3
    assert count_matches_in_html(html, "ana", SearchOptions(case_sensitive=True)) == 2
    assert count_matches_in_html(html, "ana", SearchOptions(whole_word=True)) == 2


def test_replacement_is_literal() -> None:
    out, n = replace_matches_in_html("<p>costo 1.5 y 1x5</p>", "1.5", r"\1 $1", SearchOptions())
    assert n == 1
    assert out == r"<p>costo \1 $1 y 1x5</p>"


def test_unchanged_html_is_returned_as_is() -> None:
    html = "<p>Hola<br>mundo</p>"
    assert replace_matches_in_html(html, "zzz", "x", SearchOptions()) == (html, 0)


def test_book_replace_snapshots_each_changed_chapter() -> None:
    with TestClient(app) as client:
        book = client.post("/api/books", json={"title": "Reemplazos"}).json()
        first = client.get(f"/api/books/{book['id']}/chapters").json()[0]
        base = f"/api/books/{book['id']}"
        client.put(f"{base}/chapters/{first['id']}", json={"content": "<p>Ana ve a Ana.</p>"})
        second = client.post(f"{base}/chapters", json={"content": "<p>Sin nombres.</p>"}).json()
        third = client.post(f"{base}/chapters", json={"content": "<p>Ana duerme.</p>"}).json()

        found = client.post(f"{base}/search", json={"query": "ana", "whole_word": True}).json()
        assert found["total_matches"] == 3
        assert [m["chapter_id"] for m in found["matches"]] == [first["id"], third["id"]]

        res = client.post(f"{base}/replace", json={"query": "Ana", "replacement": "Eva", "scope": "book"}).json()
        assert res["total_replacements"] == 3

        assert client.get(f"{base}/chapters/{first['id']}").json()["content"] == "<p>Eva ve a Eva.</p>"
        assert client.get(f"{base}/chapters/{second['id']}").json()["content"] == "<p>Sin nombres.</p>"

        snaps = client.get(f"{base}/chapters/{first['id']}/snapshots").json()
        assert [s["reason"] for s in snaps] == ["Buscar/Reemplazar libro completo"]
        assert snaps[0]["chapter"]["content"] == "<p>Ana ve a Ana.</p>"
        assert client.get(f"{base}/chapters/{second['id']}/snapshots").json() == []


def test_chapter_scope_replace_and_undo() -> None:
    with TestClient(app) as client:
        book = client.post("/api/books", json={"title": "Reemplazo capitulo"}).json()
        ch = client.get(f"/api/books/{book['id']}/chapters").json()[0]
        base = f"/api/books/{book['id']}"
        client.put(f"{base}/chapters/{ch['id']}", json={"content": "<p>gato</p>"})

        res = client.post(
            f"{base}/replace",
            json={"query": "gato", "replacement": "perro", "scope": "chapter", "chapter_id": ch["id"]},
        ).json()
        assert res["total_replacements"] == 1

        undone = client.post(f"{base}/chapters/{ch['id']}/undo").json()
        assert undone["chapter"]["content"] == "<p>gato</p>"

        assert client.post(f"{base}/replace", json={"query": " ", "scope": "book"}).status_code == 400
        assert client.post(f"{base}/replace", json={"query": "x", "scope": "chapter"}).status_code == 404


def test_book_replace_with_busy_chapter_writes_nothing() -> None:
    with TestClient(app) as client:
        book = client.post("/api/books", json={"title": "Reemplazo ocupado"}).json()
        base = f"/api/books/{book['id']}"
        first = client.get(f"{base}/chapters").json()[0]
        client.put(f"{base}/chapters/{first['id']}", json={"content": "<p>Ana uno.</p>"})
        second = client.post(f"{base}/chapters", json={"content": "<p>Ana dos.</p>"}).json()

        with app.state.registry.hold_chapter(second["id"]):
            res = client.post(f"{base}/replace", json={"query": "Ana", "replacement": "Eva", "scope": "book"})
        assert res.status_code == 409
        assert res.json()["detail"] == "chapter_busy"

        assert client.get(f"{base}/chapters/{first['id']}").json()["content"] == "<p>Ana uno.</p>"
        assert client.get(f"{base}/chapters/{first['id']}/snapshots").json() == []
        assert not app.state.registry.is_busy(first["id"])

        res = client.post(f"{base}/replace", json={"query": "Ana", "replacement": "Eva", "scope": "book"}).json()
        assert res["total_replacements"] == 2
