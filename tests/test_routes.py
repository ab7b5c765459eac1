"""Tests for the HTTP layer (chatagent/app.py and chatagent/routes/).

Tests verify:
- Session CRUD and the status codes of typed errors
- Blocking and NDJSON streaming ask endpoints
- Shared message flow with both identity representations
"""

import json

import pytest
from fastapi.testclient import TestClient

from chatagent.app import create_app
from chatagent.dependencies import build_container
from chatagent.errors import LLMProviderError, ProviderErrorKind, SearchProviderError
from chatagent.persistence import SessionStore

from tests.fakes import FakeCompletion, FakeSearch, hits, make_settings, word_count


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def search():
    return FakeSearch([hits(2)])


@pytest.fixture
def client(tmp_path, completion, search):
    settings = make_settings(tmp_path, provider_max_retries=0)
    container = build_container(
        settings,
        store=SessionStore(settings.doc_store_path),
        completion=completion,
        search=search,
        count=word_count,
    )
    with TestClient(create_app(container)) as test_client:
        yield test_client


def _create_session(client, **body):
    resp = client.post("/sessions", json={"title": "Test", **body})
    assert resp.status_code == 201
    return resp.json()


def _lines(resp):
    return [json.loads(line) for line in resp.text.splitlines() if line.strip()]


class TestSystem:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_status(self, client):
        body = client.get("/status").json()
        assert body["active_sessions"] == 0
        assert body["settings"]["agent"]["lock_mode"] == "queue"
        assert body["settings"]["search"]["api_key_configured"] is True


class TestSessions:
    def test_create_get_update_delete(self, client):
        session = _create_session(client, category="search", team_id=3, metadata={"k": "v"})
        assert session["category"] == "search"
        assert session["is_active"] is True

        fetched = client.get(f"/sessions/{session['id']}").json()
        assert fetched["metadata"] == {"k": "v"}

        renamed = client.patch(f"/sessions/{session['id']}", json={"title": "Renamed"})
        assert renamed.status_code == 200
        assert renamed.json()["title"] == "Renamed"

        assert client.delete(f"/sessions/{session['id']}").status_code == 204
        assert client.get(f"/sessions/{session['id']}").status_code == 404

    def test_category_change_is_conflict(self, client):
        session = _create_session(client, category="chat")
        resp = client.patch(f"/sessions/{session['id']}", json={"category": "search"})
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "immutable_field"

    def test_list_filters(self, client):
        _create_session(client, category="chat", team_id=1)
        searchable = _create_session(client, category="search", team_id=1)
        ids = [s["id"] for s in client.get("/sessions", params={"category": "search"}).json()]
        assert ids == [searchable["id"]]

    def test_unknown_session(self, client):
        resp = client.get("/sessions/404")
        assert resp.status_code == 404
        assert resp.json()["detail"]["code"] == "session_not_found"


class TestAsk:
    def test_ask_persists_turn(self, client):
        session = _create_session(client)
        resp = client.post(f"/sessions/{session['id']}/ask", json={"question": "Capital of France?", "user_id": 12})
        assert resp.status_code == 200
        body = resp.json()
        assert body["state"] == "done"
        assert body["answer"] == "Paris is the capital of France."
        assert body["verdict"] == "supported"

        messages = client.get(f"/sessions/{session['id']}/messages").json()
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert messages[0]["user_id"] == 12
        assert messages[1]["id"] == body["message_id"]

        records = client.get(
            f"/sessions/{session['id']}/completions", params={"message_id": body["message_id"]}
        ).json()
        assert [r["kind"] for r in records] == ["plan", "draft", "verify"]

    def test_blank_question(self, client):
        session = _create_session(client)
        resp = client.post(f"/sessions/{session['id']}/ask", json={"question": "   "})
        assert resp.status_code == 400

    def test_unknown_session(self, client):
        resp = client.post("/sessions/999/ask", json={"question": "q"})
        assert resp.status_code == 404

    def test_inactive_session(self, client):
        session = _create_session(client)
        client.post(f"/sessions/{session['id']}/deactivate")
        resp = client.post(f"/sessions/{session['id']}/ask", json={"question": "q"})
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "session_inactive"

    def test_question_too_large(self, client):
        session = _create_session(client)
        resp = client.post(f"/sessions/{session['id']}/ask", json={"question": "word " * 5000})
        assert resp.status_code == 413
        assert resp.json()["detail"]["code"] == "context_too_large"

    def test_provider_failure(self, client, completion):
        completion.scripts["draft"] = [LLMProviderError(ProviderErrorKind.INVALID_KEY)]
        session = _create_session(client)
        resp = client.post(f"/sessions/{session['id']}/ask", json={"question": "q"})
        assert resp.status_code == 502
        assert resp.json()["detail"]["kind"] == "invalid_key"
        assert client.get(f"/sessions/{session['id']}/messages").json() == []

    def test_search_key_rejected(self, client, search):
        search.script = [SearchProviderError(ProviderErrorKind.INVALID_KEY)]
        session = _create_session(client, category="search")
        resp = client.post(f"/sessions/{session['id']}/ask", json={"question": "Rover news?"})
        assert resp.status_code == 502
        assert resp.json()["detail"]["code"] == "search_provider_error"
        assert client.get(f"/sessions/{session['id']}/messages").json() == []


class TestAskStream:
    def test_stream_emits_ndjson_events(self, client):
        session = _create_session(client, category="search")
        resp = client.post(f"/sessions/{session['id']}/ask/stream", json={"question": "Rover news?"})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/x-ndjson")

        events = _lines(resp)
        steps = [e["state"] for e in events if e["type"] == "step"]
        assert steps == ["start", "planning", "searching", "drafting", "verifying", "finalizing"]
        tokens = "".join(e["content"] for e in events if e["type"] == "token")
        final = events[-1]
        assert final["type"] == "final"
        assert final["answer"] == tokens
        assert len(final["sources"]) == 2

    def test_stream_unknown_session_is_http_error(self, client):
        resp = client.post("/sessions/999/ask/stream", json={"question": "q"})
        assert resp.status_code == 404

    def test_stream_failure_after_start_is_an_event(self, client, completion):
        completion.scripts["draft"] = [["partial ", LLMProviderError(ProviderErrorKind.UNAVAILABLE)]]
        session = _create_session(client)
        resp = client.post(f"/sessions/{session['id']}/ask/stream", json={"question": "q"})
        assert resp.status_code == 200
        events = _lines(resp)
        assert events[-1]["type"] == "error"
        assert events[-1]["error"]["code"] == "llm_provider_error"
        assert client.get(f"/sessions/{session['id']}/messages").json() == []


class TestSharing:
    def test_share_flow_with_legacy_identity(self, client):
        session = _create_session(client)
        answer = client.post(f"/sessions/{session['id']}/ask", json={"question": "q"}).json()

        resp = client.post(f"/messages/{answer['message_id']}/share", json={"user_id_str": "legacy-1"})
        assert resp.status_code == 201
        shared = resp.json()
        assert shared["user_id"] == -1
        assert shared["user_id_str"] == "legacy-1"
        assert shared["content"] == answer["answer"]

        listed = client.get("/shared", params={"user_id_str": "legacy-1"}).json()
        assert [s["share_id"] for s in listed] == [shared["share_id"]]

        assert client.get(f"/shared/{shared['share_id']}").status_code == 200
        assert client.delete(f"/shared/{shared['share_id']}").status_code == 204
        assert client.get(f"/shared/{shared['share_id']}").status_code == 404

    def test_share_requires_identity(self, client):
        session = _create_session(client)
        answer = client.post(f"/sessions/{session['id']}/ask", json={"question": "q"}).json()
        resp = client.post(f"/messages/{answer['message_id']}/share", json={})
        assert resp.status_code == 400

    def test_list_requires_identity(self, client):
        assert client.get("/shared").status_code == 400

    def test_share_unknown_message(self, client):
        resp = client.post("/messages/12345/share", json={"user_id": 5})
        assert resp.status_code == 404
