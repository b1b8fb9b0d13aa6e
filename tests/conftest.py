from __future__ import annotations

from typing import Any

import pytest
from sse_starlette.sse import AppStatus

from history.config import settings
from history.models.task import TaskStatusSnapshot
from history.services.memory_store import MemoryStore
from history.services.store import set_store
from history.tools.deepresearch import ProviderError, parse_status


class FakeProvider:
    """Scripted stand-in for DeepResearchClient.

    ``statuses`` are provider payloads (or exceptions) returned in order;
    the last one repeats once the script runs out.
    """

    def __init__(self, statuses: list[Any] | None = None, *, task_id: str = "dr_task_1", create_error=None):
        self.statuses = list(statuses or [])
        self.task_id = task_id
        self.create_error = create_error
        self.created: list[dict[str, Any]] = []
        self.status_calls = 0
        self.closed = False

    async def create_task(self, query: str, *, model: str | None = None, output_formats=None) -> str:
        if self.create_error is not None:
            raise self.create_error
        self.created.append({"query": query, "model": model})
        return self.task_id

    async def get_status(self, task_id: str) -> TaskStatusSnapshot:
        self.status_calls += 1
        if not self.statuses:
            raise ProviderError("no scripted status", status_code=500)
        item = self.statuses[0] if len(self.statuses) == 1 else self.statuses.pop(0)
        if isinstance(item, Exception):
            raise item
        return parse_status(item)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_provider():
    return FakeProvider


@pytest.fixture(autouse=True)
def store(monkeypatch):
    """Every test runs metered against a fresh in-memory store."""
    monkeypatch.setattr(settings, "app_mode", "memory")
    monkeypatch.setattr(settings, "anonymous_cookie_secret", "test-cookie-secret")
    monkeypatch.setattr(settings, "poll_interval_seconds", 0.0)
    monkeypatch.setattr(settings, "valyu_api_key", "")
    memory = MemoryStore()
    set_store(memory)
    # sse-starlette keeps a loop-bound exit event on the class between TestClient runs.
    AppStatus.should_exit_event = None
    yield memory
    set_store(None)
