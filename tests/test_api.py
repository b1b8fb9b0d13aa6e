"""Tests for API routes."""
from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from history.client import HistoryClient, parse_sse_lines
from history.config import settings
from history.models.identity import CallerSession, FederatedUser
from history.models.task import Location, TaskStatus
from history.services.ledger import UsageLedger
from history.services.rate_limit import COOKIE_NAME, encode_anonymous_cookie
from history.tools.deepresearch import InsufficientCreditsError, ProviderError

BEARER = {"Authorization": "Bearer valyu-token"}
COMPLETED = {
    "status": "completed",
    "output": "# Tristan da Cunha\n\nThe most remote inhabited archipelago.",
    "sources": [{"title": "Britannica", "url": "https://britannica.com/place/Tristan-da-Cunha"}],
    "images": [],
}
CHAT_BODY = {
    "messages": [{"role": "user", "content": "Research the history of Tristan da Cunha"}],
    "location": {"name": "Tristan da Cunha", "lat": -37.1052, "lng": -12.2777},
}


@pytest.fixture
def app():
    from history.main import app

    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def provider(monkeypatch, fake_provider):
    """Route every DeepResearch client the app builds to one scripted fake."""
    fake = fake_provider([{"status": "running"}, COMPLETED])
    monkeypatch.setattr("history.services.orchestrator.DeepResearchClient", lambda **kwargs: fake)
    monkeypatch.setattr("history.api.routes.chat.DeepResearchClient", lambda **kwargs: fake)
    return fake


async def _signed_in_headers(store) -> dict[str, str]:
    await store.provision_user("ada@example.com", {})
    token = await store.create_sign_in_token("ada@example.com")
    return {**BEARER, "X-Session-Token": token}


def _frames(response) -> list[dict]:
    return list(parse_sse_lines(response.text.splitlines()))


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "history"}


class TestChat:
    def test_requires_valyu_credential(self, client, provider):
        response = client.post("/api/chat", json=CHAT_BODY)

        assert response.status_code == 401
        assert response.json()["error"] == "AUTH_REQUIRED"
        assert provider.created == []

    def test_anonymous_run_then_quota_exhausted(self, app, client, provider):
        response = client.post("/api/chat", json=CHAT_BODY, headers=BEARER)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        frames = _frames(response)
        assert [f["type"] for f in frames] == ["task_created", "status", "progress", "content", "sources", "done"]
        assert frames[0]["taskId"] == "dr_task_1"
        assert provider.created[0]["query"].endswith("Location: Tristan da Cunha")

        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith(f"{COOKIE_NAME}=")
        assert "httponly" in set_cookie.lower()
        cookie = set_cookie.split(";")[0]

        fresh = TestClient(app)
        again = fresh.post("/api/chat", json=CHAT_BODY, headers={**BEARER, "Cookie": cookie})

        assert again.status_code == 429
        body = again.json()
        assert body["error"] == "RATE_LIMIT_EXCEEDED"
        assert body["tier"] == "anonymous"
        assert body["remaining"] == 0
        assert "resetTime" in body
        assert len(provider.created) == 1

    @pytest.mark.asyncio
    async def test_signed_in_run_is_recorded(self, client, provider, store):
        headers = await _signed_in_headers(store)
        body = {**CHAT_BODY, "sessionId": "5b7c2d9e-1f3a-4b6c-8d0e-2a4c6e8f0b1d"}

        response = client.post("/api/chat", json=body, headers=headers)

        assert _frames(response)[-1]["type"] == "done"
        assert "set-cookie" not in response.headers
        usage = client.get("/api/rate-limit", headers=headers).json()
        assert usage["used"] == 1
        assert usage["tier"] == "free"
        assert usage["display"] == "1/3 queries today"
        history = client.get("/api/history", headers=headers).json()
        assert [t["status"] for t in history["tasks"]] == ["completed"]
        roles = [m["role"] for m in store.chat_messages["5b7c2d9e-1f3a-4b6c-8d0e-2a4c6e8f0b1d"]]
        assert roles == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_submit_failure_gives_back_quota(self, client, provider, store):
        headers = await _signed_in_headers(store)
        provider.create_error = ProviderError("DeepResearch API error: boom", status_code=500)

        response = client.post("/api/chat", json=CHAT_BODY, headers=headers)

        assert response.status_code == 500
        assert response.json()["error"] == "CHAT_ERROR"
        assert client.get("/api/rate-limit", headers=headers).json()["used"] == 0

    def test_insufficient_credits(self, client, provider):
        provider.create_error = InsufficientCreditsError("Insufficient credits", status_code=402)

        response = client.post("/api/chat", json=CHAT_BODY, headers=BEARER)

        assert response.status_code == 402
        assert response.json()["error"] == "INSUFFICIENT_CREDITS"
        # A rejected submission does not spend the anonymous run.
        assert "set-cookie" not in response.headers

    def test_self_hosted_mode_is_unmetered(self, client, provider, monkeypatch):
        monkeypatch.setattr(settings, "app_mode", "self-hosted")

        for _ in range(5):
            response = client.post("/api/chat", json=CHAT_BODY)
            assert response.status_code == 200

        assert response.headers["x-development-mode"] == "true"
        assert client.get("/api/rate-limit").json()["tier"] == "development"


class TestPoll:
    def test_missing_task_id(self, client):
        response = client.get("/api/chat/poll")

        assert response.status_code == 400
        assert response.json() == {"error": "Missing taskId parameter"}

    def test_requires_credential(self, client):
        response = client.get("/api/chat/poll", params={"taskId": "dr_task_1"})

        assert response.status_code == 401

    def test_returns_provider_snapshot(self, client, provider):
        provider.statuses = [COMPLETED]

        response = client.get("/api/chat/poll", params={"taskId": "dr_task_1"}, headers=BEARER)

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["output"].startswith("# Tristan")
        assert "no-cache" in response.headers["cache-control"]
        assert provider.closed is True

    def test_provider_failure(self, client, provider):
        provider.statuses = [ProviderError("Task not found", status_code=404)]

        response = client.get("/api/chat/poll", params={"taskId": "dr_missing"}, headers=BEARER)

        assert response.status_code == 500
        assert response.json() == {"error": "Task not found"}

    @pytest.mark.asyncio
    async def test_client_keeps_polling_until_report_arrives(self, app, provider, store):
        account = await store.provision_user("ada@example.com", {})
        ledger = UsageLedger(store)
        tristan = Location(name="Tristan da Cunha", lat=-37.1052, lng=-12.2777)
        await ledger.record_created("dr_task_1", tristan, CallerSession(user_id=account.id))
        await ledger.record_status("dr_task_1", TaskStatus.COMPLETED)

        async def no_sleep(_seconds):
            return None

        http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://history.test")
        client = HistoryClient("http://history.test", access_token="valyu-token", http_client=http, sleep=no_sleep)

        events = [event async for event in client.poll_until_done("dr_task_1")]
        await http.aclose()

        assert [e["type"] for e in events] == ["progress", "content", "sources", "done"]
        assert events[1]["content"].startswith("# Tristan da Cunha")
        assert provider.status_calls == 2


class TestRateLimitRoute:
    def test_fresh_anonymous_caller(self, client):
        body = client.get("/api/rate-limit").json()

        assert body["allowed"] is True
        assert body["used"] == 0
        assert body["limit"] == 1
        assert body["tier"] == "anonymous"

    def test_anonymous_cookie_counts(self, client):
        cookie = f"{COOKIE_NAME}={encode_anonymous_cookie(1)}"

        body = client.get("/api/rate-limit", headers={"Cookie": cookie}).json()

        assert body["allowed"] is False
        assert body["display"] == "1/1 lifetime queries"


class TestAuth:
    def test_authorize_rejects_unknown_redirect(self, client):
        response = client.get("/api/auth/valyu/authorize", params={"redirect_uri": "https://evil.example/cb"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_token_requires_parameters(self, client):
        response = client.post("/api/auth/valyu/token", json={})

        assert response.status_code == 400
        assert response.json() == {"error": "invalid_request", "message": "Missing required parameters"}

    def test_callback_redirects_to_app(self, client, monkeypatch):
        monkeypatch.setattr(settings, "app_url", "https://history.example")

        response = client.get(
            "/auth/valyu/callback", params={"code": "abc", "state": "xyz"}, follow_redirects=False
        )

        assert response.status_code == 307
        assert response.headers["location"] == "https://history.example/auth/valyu/complete?code=abc&state=xyz"

    def test_session_moves_anonymous_usage_to_account(self, client, store, monkeypatch):
        async def fake_fetch(access_token, **kwargs):
            return FederatedUser(sub="valyu|1", email="grace@example.com", name="Grace")

        monkeypatch.setattr("history.services.session_bridge.fetch_user_info", fake_fetch)
        cookie = f"{COOKIE_NAME}={encode_anonymous_cookie(1)}"

        response = client.post(
            "/api/auth/valyu/session", json={"valyu_access_token": "valyu-token"}, headers={"Cookie": cookie}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["email"] == "grace@example.com"
        assert "Max-Age=0" in response.headers["set-cookie"]
        usage = client.get("/api/rate-limit", headers={"X-Session-Token": body["tokenHash"]}).json()
        assert usage["used"] == 1
        assert usage["tier"] == "free"

    def test_session_without_email(self, client, monkeypatch):
        async def fake_fetch(access_token, **kwargs):
            return FederatedUser(sub="valyu|2", email=None)

        monkeypatch.setattr("history.services.session_bridge.fetch_user_info", fake_fetch)

        response = client.post("/api/auth/valyu/session", json={"valyu_access_token": "valyu-token"})

        assert response.status_code == 400
        assert response.json()["error"] == "missing_email"


class TestHistory:
    def test_anonymous_cannot_list(self, client):
        assert client.get("/api/history").status_code == 401

    @pytest.mark.asyncio
    async def test_share_link_round_trip(self, client, provider, store):
        headers = await _signed_in_headers(store)
        client.post("/api/chat", json=CHAT_BODY, headers=headers)
        task_id = client.get("/api/history", headers=headers).json()["tasks"][0]["id"]

        shared = client.post(f"/api/history/{task_id}/share", headers=headers).json()
        public = client.get(f"/api/share/{shared['shareToken']}")

        assert public.status_code == 200
        assert public.json()["location_name"] == "Tristan da Cunha"

        client.delete(f"/api/history/{task_id}/share", headers=headers)
        assert client.get(f"/api/share/{shared['shareToken']}").status_code == 404

    @pytest.mark.asyncio
    async def test_delete_unknown_task(self, client, store):
        headers = await _signed_in_headers(store)

        assert client.delete("/api/history/nope", headers=headers).status_code == 404
