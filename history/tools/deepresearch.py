from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

import httpx

from history.config import settings
from history.models.task import TaskStatus, TaskStatusSnapshot
from history.services.env_safety import sanitize_ssl_keylogfile
from history.services.logger import log_provider_call

if TYPE_CHECKING:
    from history.services.oauth import TokenProvider

TASKS_PATH = "/v1/deepresearch/tasks"
DEFAULT_TOTAL_STEPS = 10


class ProviderError(Exception):
    """The DeepResearch provider rejected or failed a request."""

    def __init__(self, detail: str, status_code: int | None = None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class InsufficientCreditsError(ProviderError):
    """The caller's Valyu organisation has no credit left (HTTP 402)."""


class ProviderAuthError(ProviderError):
    """No usable credential, or the provider refused it."""


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        detail = payload.get("error") or payload.get("message")
        if isinstance(detail, str) and detail:
            return detail
    text = response.text.strip() if response.text else ""
    return text[:300] or response.reason_phrase or f"HTTP {response.status_code}"


def parse_status(payload: dict[str, Any]) -> TaskStatusSnapshot:
    """Normalize a provider status payload.

    Unknown status strings read as ``queued`` so they never advance a task.
    """
    progress = payload.get("progress") or {}
    if not isinstance(progress, dict):
        progress = {}
    current_step = progress.get("current_step") or progress.get("step") or 0
    total_steps = progress.get("total_steps") or progress.get("total") or DEFAULT_TOTAL_STEPS
    messages = payload.get("messages")
    sources = payload.get("sources")
    images = payload.get("images")
    return TaskStatusSnapshot(
        status=TaskStatus.parse(payload.get("status")) or TaskStatus.QUEUED,
        current_step=int(current_step),
        total_steps=int(total_steps),
        progress_message=progress.get("message") or None,
        messages=messages if isinstance(messages, list) else [],
        output=str(payload.get("output") or ""),
        sources=sources if isinstance(sources, list) else [],
        images=images if isinstance(images, list) else [],
        error=payload.get("error") or None,
        raw=payload,
    )


class DeepResearchClient:
    """Async client for the Valyu DeepResearch task API.

    Requests go through the Valyu OAuth proxy when a token provider is given,
    so usage is billed to the signed-in organisation. Without one, the server
    API key is used against the API directly (self-hosted deployments).
    """

    def __init__(
        self,
        *,
        token_provider: TokenProvider | None = None,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.token_provider = token_provider
        self.api_key = api_key if api_key is not None else settings.valyu_api_key
        self._owns_client = http_client is None
        if http_client is None:
            sanitize_ssl_keylogfile()
            http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
        self._client = http_client
        self.closed = False

    async def __aenter__(self) -> DeepResearchClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._owns_client:
            await self._client.aclose()

    @property
    def has_credential(self) -> bool:
        return self.token_provider is not None or bool(self.api_key)

    async def _send(self, method: str, path: str, body: dict | None = None) -> httpx.Response:
        if self.token_provider is not None:
            token = await self.token_provider.get_access_token()
            proxy_body: dict[str, Any] = {"path": path, "method": method}
            if body is not None:
                proxy_body["body"] = body
            return await self._client.post(
                settings.oauth_proxy_url,
                json=proxy_body,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
            )

        if not self.api_key:
            raise ProviderAuthError("No Valyu credential available", status_code=401)

        # Direct API paths are relative to the deepresearch base URL.
        relative = path.removeprefix("/v1/deepresearch")
        url = f"{settings.valyu_api_url.rstrip('/')}{relative}"
        return await self._client.request(
            method,
            url,
            json=body,
            headers={"X-API-Key": self.api_key, "Content-Type": "application/json"},
        )

    async def _request(self, method: str, path: str, body: dict | None = None) -> dict[str, Any]:
        started = time.monotonic()
        try:
            response = await self._send(method, path, body)
        except httpx.HTTPError as e:
            log_provider_call(method, path, None, int((time.monotonic() - started) * 1000), error=str(e))
            raise ProviderError(f"DeepResearch request failed: {e}") from e

        duration_ms = int((time.monotonic() - started) * 1000)
        if response.status_code >= 400:
            detail = _error_detail(response)
            log_provider_call(method, path, response.status_code, duration_ms, error=detail)
            if response.status_code == 402:
                raise InsufficientCreditsError(detail, status_code=402)
            if response.status_code in (401, 403):
                raise ProviderAuthError(detail, status_code=response.status_code)
            raise ProviderError(detail, status_code=response.status_code)

        log_provider_call(method, path, response.status_code, duration_ms)
        payload = response.json()
        return payload if isinstance(payload, dict) else {"data": payload}

    async def create_task(
        self,
        query: str,
        *,
        model: str | None = None,
        output_formats: list[str] | None = None,
    ) -> str:
        """Submit a research query and return the provider task id."""
        body = {
            "input": query,
            "model": model or settings.deepresearch_model,
            "output_formats": output_formats or ["markdown"],
        }
        try:
            payload = await self._request("POST", TASKS_PATH, body)
        except InsufficientCreditsError:
            raise
        except ProviderError as e:
            raise ProviderError(f"DeepResearch API error: {e.detail}", status_code=e.status_code) from e

        task_id = payload.get("deepresearch_id") or payload.get("deepsearch_id")
        if not task_id:
            raise ProviderError("DeepResearch API returned no task id")
        return str(task_id)

    async def get_status(self, task_id: str) -> TaskStatusSnapshot:
        payload = await self._request("GET", f"{TASKS_PATH}/{task_id}/status")
        return parse_status(payload)

    async def proxy(self, path: str, method: str = "POST", body: Any = None) -> dict[str, Any]:
        """Forward an arbitrary Valyu API call through the OAuth proxy."""
        if self.token_provider is None:
            raise ProviderAuthError("Missing or invalid authorization header", status_code=401)
        return await self._request(method, path, body)
