import json

import httpx
import pytest
from fastapi.testclient import TestClient

from gateway_app.main import app
from key_rotator import RetryOrchestrator

MASTER_KEY = "test-master-key"
UPSTREAM = "https://upstream.test/v1beta/openai"

COMPLETION = {
    "id": "chatcmpl-mock",
    "object": "chat.completion",
    "created": 1,
    "model": "gemini-2.0-flash",
    "choices": [
        {
            "index": 0,
            "message": {"role": "assistant", "content": "Hello world!"},
            "finish_reason": "stop",
        }
    ],
}


def auth_headers():
    return {"Authorization": f"Bearer {MASTER_KEY}"}


def default_upstream(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/models"):
        return httpx.Response(
            200, json={"object": "list", "data": [{"id": "gemini-2.0-flash", "object": "model"}]}
        )
    body = json.loads(request.content)
    if body.get("stream"):
        chunks = [
            'data: {"choices": [{"delta": {"content": "Hello"}}]}\n\n',
            'data: {"choices": [{"delta": {"content": " world!"}}]}\n\n',
            "data: [DONE]\n\n",
        ]
        return httpx.Response(
            200,
            headers={"Content-Type": "text/event-stream"},
            content="".join(chunks).encode(),
        )
    return httpx.Response(200, json=COMPLETION)


def install_upstream(handler) -> None:
    state = app.state
    state.orchestrator = RetryOrchestrator(
        state.rotation_engine,
        state.settings_provider,
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        base_url=UPSTREAM,
        usage_logger=state.usage_recorder,
    )


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.setenv("MASTER_API_KEY", MASTER_KEY)
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}")
    monkeypatch.setenv("SETTINGS_FILE", str(tmp_path / "settings.json"))
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("APP_ENV", raising=False)

    with TestClient(app) as test_client:
        install_upstream(default_upstream)
        yield test_client


def add_key(client: TestClient, key: str, **extra) -> dict:
    resp = client.post("/api/admin/keys", json={"key": key, **extra}, headers=auth_headers())
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_root_healthcheck(client: TestClient) -> None:
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json().get("Status")


def test_proxy_requires_master_key(client: TestClient) -> None:
    resp = client.post(
        "/v1/chat/completions",
        json={"model": "m", "messages": []},
        headers={"Authorization": "Bearer wrong"},
    )
    assert resp.status_code == 401
    assert resp.json() == {
        "error": {"message": "Unauthorized", "type": "authentication_error"}
    }

    assert client.get("/api/admin/keys").status_code == 401


def test_chat_completions_non_stream(client: TestClient) -> None:
    added = add_key(client, "AIzaSy-smoke-key-000000001")

    resp = client.post(
        "/v1/chat/completions",
        json={"model": "gemini-2.0-flash", "messages": [{"role": "user", "content": "hi"}]},
        headers=auth_headers(),
    )
    assert resp.status_code == 200
    assert resp.json()["choices"][0]["message"]["content"] == "Hello world!"

    keys = client.get("/api/admin/keys", headers=auth_headers()).json()["keys"]
    assert keys[0]["id"] == added["id"]
    assert keys[0]["request_count"] == 1
    assert keys[0]["is_current"] is True


def test_chat_completions_streaming_sse(client: TestClient) -> None:
    add_key(client, "AIzaSy-smoke-key-000000001")
    payload = {"model": "gemini-2.0-flash", "messages": [], "stream": True}

    with client.stream("POST", "/v1/chat/completions", json=payload, headers=auth_headers()) as resp:
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        text = b"".join(resp.iter_raw()).decode()

    assert "data: [DONE]" in text
    assert '"content": "Hello"' in text


def test_models_list_endpoint(client: TestClient) -> None:
    add_key(client, "AIzaSy-smoke-key-000000001")

    resp = client.get("/v1/models", headers=auth_headers())
    assert resp.status_code == 200
    assert resp.json()["data"][0]["id"] == "gemini-2.0-flash"


def test_no_keys_returns_service_unavailable(client: TestClient) -> None:
    resp = client.post("/v1/chat/completions", json={"messages": []}, headers=auth_headers())
    assert resp.status_code == 503
    assert resp.json()["error"]["type"] == "no_key_available"


def test_invalid_json_body_is_rejected(client: TestClient) -> None:
    resp = client.post(
        "/v1/chat/completions",
        content=b"{not json",
        headers={**auth_headers(), "Content-Type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "invalid_request_error"


def test_upstream_client_error_is_relayed(client: TestClient) -> None:
    add_key(client, "AIzaSy-smoke-key-000000001")
    install_upstream(
        lambda request: httpx.Response(
            400, json={"error": {"message": "model not found", "type": "invalid_request_error"}}
        )
    )

    resp = client.post("/v1/chat/completions", json={"model": "nope"}, headers=auth_headers())
    assert resp.status_code == 400
    assert resp.json() == {
        "error": {"message": "model not found", "type": "invalid_request_error"}
    }


def test_admin_keys_are_masked_and_editable(client: TestClient) -> None:
    added = add_key(client, "AIzaSy-smoke-key-000000001", name="primary", daily_limit="25")
    assert added["key"] == "AIzaSy-smo...0001"
    assert added["daily_limit"] == 25
    key_id = added["id"]

    resp = client.put(f"/api/admin/keys/{key_id}", json={"daily_limit": -3}, headers=auth_headers())
    assert resp.status_code == 400

    resp = client.put(
        f"/api/admin/keys/{key_id}",
        json={"name": "renamed", "daily_limit": None},
        headers=auth_headers(),
    )
    assert resp.status_code == 200
    assert resp.json()["name"] == "renamed"
    assert resp.json()["daily_limit"] is None

    resp = client.patch(f"/api/admin/keys/{key_id}", headers=auth_headers())
    assert resp.status_code == 200
    assert resp.json()["is_active"] is False

    resp = client.patch(f"/api/admin/keys/{key_id}", json={"is_active": True}, headers=auth_headers())
    assert resp.json()["is_active"] is True

    assert client.delete(f"/api/admin/keys/{key_id}", headers=auth_headers()).json() == {"ok": True}
    assert client.delete(f"/api/admin/keys/{key_id}", headers=auth_headers()).status_code == 404
    assert client.patch(f"/api/admin/keys/{key_id}", headers=auth_headers()).status_code == 404


def test_admin_add_key_validation(client: TestClient) -> None:
    resp = client.post("/api/admin/keys", json={"key": "  "}, headers=auth_headers())
    assert resp.status_code == 400

    resp = client.post(
        "/api/admin/keys", json={"key": "AIzaSy-smoke-key-000000001", "daily_limit": "ten"},
        headers=auth_headers(),
    )
    assert resp.status_code == 400


def test_admin_settings_round_trip(client: TestClient) -> None:
    resp = client.get("/api/admin/settings", headers=auth_headers())
    assert resp.status_code == 200
    assert resp.json()["max_retries"] == 3

    resp = client.post(
        "/api/admin/settings",
        json={"max_retries": 50, "rotation_request_count": 10},
        headers=auth_headers(),
    )
    assert resp.status_code == 200
    assert resp.json()["max_retries"] == 10
    assert resp.json()["rotation_request_count"] == 10

    assert client.get("/api/admin/settings", headers=auth_headers()).json()["max_retries"] == 10


def test_admin_cleanup_logs(client: TestClient) -> None:
    resp = client.post("/api/admin/cleanup-logs", headers=auth_headers())
    assert resp.status_code == 200
    assert resp.json() == {"deleted": 0, "retention_days": 14}


def test_admin_bulk_set_limit_and_delete(client: TestClient) -> None:
    first = add_key(client, "AIzaSy-smoke-key-000000001")
    second = add_key(client, "AIzaSy-smoke-key-000000002")
    third = add_key(client, "AIzaSy-smoke-key-000000003")

    resp = client.patch(
        "/api/admin/keys/bulk",
        json={"action": "setLimit", "key_ids": [first["id"], second["id"]], "daily_limit": 50},
        headers=auth_headers(),
    )
    assert resp.status_code == 200, resp.text
    assert resp.json() == {
        "message": "Successfully updated daily limit for 2 keys.",
        "count": 2,
    }
    limits = {
        k["id"]: k["daily_limit"]
        for k in client.get("/api/admin/keys", headers=auth_headers()).json()["keys"]
    }
    assert limits == {first["id"]: 50, second["id"]: 50, third["id"]: None}

    resp = client.patch(
        "/api/admin/keys/bulk",
        json={"action": "setLimit", "key_ids": [first["id"]], "daily_limit": None},
        headers=auth_headers(),
    )
    assert resp.json()["count"] == 1

    resp = client.patch(
        "/api/admin/keys/bulk",
        json={"action": "delete", "key_ids": [first["id"], third["id"], "missing"]},
        headers=auth_headers(),
    )
    assert resp.status_code == 200
    assert resp.json() == {"message": "Successfully deleted 2 keys.", "count": 2}
    keys = client.get("/api/admin/keys", headers=auth_headers()).json()["keys"]
    assert [k["id"] for k in keys] == [second["id"]]
    assert keys[0]["daily_limit"] == 50


def test_admin_bulk_action_validation(client: TestClient) -> None:
    added = add_key(client, "AIzaSy-smoke-key-000000001")

    def bulk(body):
        return client.patch("/api/admin/keys/bulk", json=body, headers=auth_headers())

    resp = bulk({"action": "archive", "key_ids": [added["id"]]})
    assert resp.status_code == 400
    assert "setLimit" in resp.json()["detail"]

    assert bulk({"action": "delete", "key_ids": []}).status_code == 400
    assert bulk({"action": "delete", "key_ids": "all"}).status_code == 400
    assert bulk({"action": "delete", "key_ids": [added["id"], "  "]}).status_code == 400
    assert bulk({"action": "setLimit", "key_ids": [added["id"]]}).status_code == 400
    assert bulk({"action": "setLimit", "key_ids": [added["id"]], "daily_limit": -1}).status_code == 400
    assert bulk({"action": "setLimit", "key_ids": [added["id"]], "daily_limit": "5"}).status_code == 400

    resp = bulk({"action": "delete", "key_ids": ["missing"]})
    assert resp.status_code == 200
    assert resp.json()["count"] == 0
    assert len(client.get("/api/admin/keys", headers=auth_headers()).json()["keys"]) == 1

    resp = client.patch(
        "/api/admin/keys/bulk",
        json={"action": "delete", "key_ids": [added["id"]]},
        headers={"Authorization": "Bearer wrong"},
    )
    assert resp.status_code == 401


def test_admin_settings_keep_at_least_one_attempt(client: TestClient) -> None:
    add_key(client, "AIzaSy-smoke-key-000000001")
    resp = client.post("/api/admin/settings", json={"max_retries": 0}, headers=auth_headers())
    assert resp.json()["max_retries"] == 1

    resp = client.post(
        "/v1/chat/completions",
        json={"model": "gemini-2.0-flash", "messages": []},
        headers=auth_headers(),
    )
    assert resp.status_code == 200
