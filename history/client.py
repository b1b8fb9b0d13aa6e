"""Consumer for the research stream, with hand-over to polling.

The server relays progress over SSE for as long as it is allowed to hold a
request open. When that budget runs out it sends ``continue_polling`` and the
client keeps asking ``/api/chat/poll`` until the task is terminal, producing
the same event shapes either way.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Iterator

import httpx

from history.models.task import Location, TaskStatus
from history.services import streaming
from history.tools.deepresearch import parse_status


class HistoryAPIError(Exception):
    def __init__(self, status_code: int, code: str, message: str, payload: dict[str, Any] | None = None):
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.payload = payload or {}

    @classmethod
    def from_response(cls, response: httpx.Response) -> HistoryAPIError:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        code = str(payload.get("error") or f"HTTP_{response.status_code}")
        message = str(payload.get("message") or payload.get("error") or response.reason_phrase)
        return cls(response.status_code, code, message, payload)


class SSEDecoder:
    """Incremental SSE frame decoder: feed lines, get a dict per complete frame."""

    def __init__(self) -> None:
        self._event: str | None = None
        self._data: list[str] = []

    def feed(self, line: str) -> dict[str, Any] | None:
        line = line.rstrip("\r\n")
        if not line:
            return self._flush()
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        return None

    def _flush(self) -> dict[str, Any] | None:
        event, data = self._event, self._data
        self._event, self._data = None, []
        if not data:
            return None
        try:
            decoded = json.loads("\n".join(data))
        except json.JSONDecodeError:
            decoded = {"data": "\n".join(data)}
        if not isinstance(decoded, dict):
            decoded = {"data": decoded}
        if event and "type" not in decoded:
            decoded["type"] = event
        return decoded


def parse_sse_lines(lines: Iterable[str]) -> Iterator[dict[str, Any]]:
    decoder = SSEDecoder()
    for line in lines:
        frame = decoder.feed(line)
        if frame is not None:
            yield frame
    frame = decoder.feed("")
    if frame is not None:
        yield frame


def _relayed_items(messages: Any) -> list[tuple[str, dict[str, Any]]]:
    """Flatten transcript messages into the items the server relays as ``message_update``."""
    items: list[tuple[str, dict[str, Any]]] = []
    if not isinstance(messages, list):
        return items
    for message in messages:
        if not isinstance(message, dict) or message.get("role") not in ("assistant", "tool"):
            continue
        content = message.get("content")
        if isinstance(content, list):
            items.extend((message["role"], item) for item in content if isinstance(item, dict))
    return items


class HistoryClient:
    def __init__(
        self,
        base_url: str,
        *,
        access_token: str | None = None,
        session_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        poll_interval: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.session_token = session_token
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=None)
        self.poll_interval = poll_interval
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HistoryClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        if self.session_token:
            headers["X-Session-Token"] = self.session_token
        return headers

    async def research(
        self,
        location: Location,
        messages: list[dict[str, Any]] | None = None,
        custom_instructions: str | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Submit a research task and yield its events until it is terminal."""
        body: dict[str, Any] = {
            "messages": messages or [{"role": "user", "content": f"Research the history of {location.name}"}],
            "location": {"name": location.name, "lat": location.lat, "lng": location.lng},
        }
        if custom_instructions:
            body["customInstructions"] = custom_instructions
        if self.access_token:
            body["valyuAccessToken"] = self.access_token

        handoff: str | None = None
        relayed = 0
        async with self._client.stream(
            "POST", f"{self.base_url}/api/chat", json=body, headers=self._headers()
        ) as response:
            if response.status_code >= 400:
                await response.aread()
                raise HistoryAPIError.from_response(response)
            decoder = SSEDecoder()
            async for line in response.aiter_lines():
                event = decoder.feed(line)
                if event is None:
                    continue
                if event.get("type") == "message_update":
                    relayed += 1
                yield event
                if event.get("type") == "continue_polling":
                    handoff = str(event.get("taskId") or "")
                    break

        if handoff:
            async for event in self.poll_until_done(handoff, relayed=relayed):
                yield event

    async def poll_until_done(self, task_id: str, *, relayed: int = 0) -> AsyncIterator[dict[str, Any]]:
        while True:
            await self._sleep(self.poll_interval)
            response = await self._client.get(
                f"{self.base_url}/api/chat/poll", params={"taskId": task_id}, headers=self._headers()
            )
            if response.status_code >= 400:
                raise HistoryAPIError.from_response(response)
            snapshot = parse_status(response.json())

            items = _relayed_items(snapshot.messages)
            for role, item in items[relayed:]:
                yield streaming.message_update(str(item.get("type", "")), item, role).payload()
            relayed = max(relayed, len(items))

            if snapshot.status == TaskStatus.RUNNING:
                message = snapshot.progress_message or (
                    f"Researching... ({snapshot.current_step}/{snapshot.total_steps} steps)"
                )
                yield streaming.progress(
                    "running", message, snapshot.current_step, snapshot.total_steps
                ).payload()
            elif snapshot.status == TaskStatus.COMPLETED:
                yield streaming.content(snapshot.output).payload()
                if snapshot.sources:
                    yield streaming.sources(snapshot.sources).payload()
                if snapshot.images:
                    yield streaming.images(snapshot.images).payload()
                yield streaming.done().payload()
                return
            elif snapshot.status == TaskStatus.FAILED:
                yield streaming.error(snapshot.error or "Research task failed").payload()
                return
