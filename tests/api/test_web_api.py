"""
Tests for the HTTP API.

Runs the FastAPI app in-process against a core with a scripted backend and
checks status codes, the structured error format and the SSE stream.
"""

import pytest
from fastapi.testclient import TestClient

from agentdeck.system.stream_codec import parse_events
from agentdeck.web.app import create_app

BASE = "/api/v1"
AGENT = f"{BASE}/workspaces/ws1/agents/agent1"


@pytest.fixture
def client(core):
    return TestClient(create_app(core))


def _error(response):
    error = response.json()["detail"]["error"]
    assert set(error) == {"code", "message", "recoverable", "suggested_action", "details"}
    return error


def _checkpoint_body(**overrides):
    body = {
        "title": "Streaming expert",
        "description": "Knows how the stream codec frames events",
        "tags": ["sse", "codec"],
        "expertise_summary": "Explains server-sent events and marker parsing in depth",
    }
    body.update(overrides)
    return body


def test_health(client):
    response = client.get(f"{BASE}/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["backend"] == "fake"


def test_stream_endpoint_emits_sse_frames(client):
    response = client.post(f"{AGENT}/conversation/stream", json={"message": "HISTORY TEST 1"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    events = parse_events(response.text)
    assert [e["type"] for e in events] == ["start"] + ["chunk"] * 5 + ["complete"]

    conversation = client.get(f"{AGENT}/conversation").json()
    assert [m["role"] for m in conversation["messages"]] == ["user", "assistant"]
    assert conversation["messages"][1]["content"] == "Hello world done!"
    assert len(conversation["messages"][1]["metadata"]["tool_uses"]) == 1


def test_stream_endpoint_unknown_workspace(client):
    response = client.post(f"{BASE}/workspaces/nope/agents/agent1/conversation/stream", json={"message": "hi"})
    assert response.status_code == 404
    assert _error(response)["code"] == "NOT_FOUND"


def test_empty_conversation_for_new_agent(client):
    response = client.get(f"{AGENT}/conversation")
    assert response.status_code == 200
    assert response.json()["messages"] == []


def test_post_conversation_runs_turn(client):
    response = client.post(f"{AGENT}/conversation", json={"message": "hello"})
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["assistant_message"]["content"] == "Hello world done!"


def test_post_conversation_backend_error(client, backend):
    from agentdeck.utils.errors import BackendError

    backend.fail_with = BackendError("backend exploded")
    response = client.post(f"{AGENT}/conversation", json={"message": "hello"})

    assert response.status_code == 502
    assert _error(response)["code"] == "BACKEND_ERROR"
    messages = client.get(f"{AGENT}/conversation").json()["messages"]
    assert [m["role"] for m in messages] == ["user"]


def test_save_only_upserts_partial_message(client):
    first = client.post(f"{AGENT}/conversation", json={"save_only": True, "message_id": "m1", "content": "par"})
    second = client.post(
        f"{AGENT}/conversation", json={"save_only": True, "message_id": "m1", "content": "partial done"}
    )
    assert first.status_code == second.status_code == 200

    messages = client.get(f"{AGENT}/conversation").json()["messages"]
    assert len(messages) == 1
    assert messages[0]["content"] == "partial done"


def test_save_only_rejects_unknown_role(client):
    response = client.post(f"{AGENT}/conversation", json={"save_only": True, "content": "x", "role": "robot"})
    assert response.status_code == 400
    assert _error(response)["code"] == "VALIDATION_ERROR"


def test_session_restore_and_status(client):
    response = client.post(f"{AGENT}/session-restore", json={"session_id": "abc"})
    assert response.status_code == 200
    data = response.json()
    assert data["restored"] is False
    assert data["reason"] == "No previous agent state found"

    status = client.get(f"{AGENT}/status").json()
    assert status["status"] == "idle"
    assert status["busy"] is False

    assert client.post(f"{AGENT}/session-restore", json={"session_id": ""}).status_code == 400
    assert client.post(f"{AGENT}/session-restore", json={}).status_code == 422


def test_history_counts_messages(client):
    client.post(f"{AGENT}/conversation/stream", json={"message": "one"})
    history = client.get(f"{AGENT}/history").json()
    assert history["total_interactions"] == 1
    assert history["message_count"] == 2


def test_checkpoint_lifecycle(client, core):
    client.post(f"{AGENT}/conversation/stream", json={"message": "teach me SSE"})
    core.workspaces.create("ws2")

    created = client.post(f"{AGENT}/checkpoints", json=_checkpoint_body())
    assert created.status_code == 200
    checkpoint_id = created.json()["checkpoint_id"]

    fetched = client.get(f"{BASE}/checkpoints/{checkpoint_id}").json()
    assert fetched["title"] == "Streaming expert"
    assert len(fetched["full_conversation_state"]["messages"]) == 2

    listed = client.get(f"{BASE}/checkpoints").json()
    assert listed["total_count"] == 1

    found = client.post(f"{BASE}/checkpoints/search", json={"query": "streaming", "tags": ["sse"]}).json()
    assert [c["id"] for c in found["checkpoints"]] == [checkpoint_id]

    restored = client.post(
        f"{BASE}/checkpoints/{checkpoint_id}/restore",
        json={"target_workspace_id": "ws2", "target_agent_id": "agent9", "seed_conversation": True},
    )
    assert restored.status_code == 200
    assert restored.json()["seeded_message_count"] == 2
    assert len(restored.json()["restoration_data"]["conversation_messages"]) == 2
    assert len(client.get(f"{BASE}/workspaces/ws2/agents/agent9/conversation").json()["messages"]) == 2

    feedback = client.post(f"{BASE}/checkpoints/{checkpoint_id}/feedback", json={"session_length": 3, "rating": 5})
    assert feedback.json()["analytics_summary"]["feedback_count"] == 1

    stats = client.get(f"{BASE}/checkpoints/stats").json()
    assert stats["total_checkpoints"] == 1
    assert "sse" in stats["most_used_tags"]

    assert client.delete(f"{BASE}/checkpoints/{checkpoint_id}").status_code == 200
    missing = client.get(f"{BASE}/checkpoints/{checkpoint_id}")
    assert missing.status_code == 404
    assert _error(missing)["code"] == "NOT_FOUND"
    assert client.delete(f"{BASE}/checkpoints/{checkpoint_id}").status_code == 404


def test_checkpoint_validation_error_lists_all_problems(client):
    client.post(f"{AGENT}/conversation/stream", json={"message": "hi"})

    response = client.post(f"{AGENT}/checkpoints", json=_checkpoint_body(title="", description="tiny"))

    assert response.status_code == 400
    error = _error(response)
    assert error["code"] == "VALIDATION_ERROR"
    assert "Missing required field: title" in error["details"]["errors"]
    assert any("Description" in e for e in error["details"]["errors"])


def test_checkpoint_search_rejects_bad_sort(client):
    response = client.post(f"{BASE}/checkpoints/search", json={"sort_by": "alphabetical"})
    assert response.status_code == 400


def test_reindex(client):
    response = client.post(f"{BASE}/checkpoints/reindex")
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["total"] == 0
