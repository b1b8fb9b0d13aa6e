from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from history.config import settings
from history.models.identity import ProvisionedUser
from history.models.task import TaskRecord, TaskStatus

# Counter scopes for user_rate_limits: (count column, period marker column)
COUNTER_COLUMNS: dict[str, tuple[str, str | None]] = {
    "daily": ("usage_count", "reset_date"),
    "monthly": ("monthly_usage_count", "monthly_reset_date"),
    "total": ("usage_count", None),
}


class Store(Protocol):
    # --- Users and sessions ---
    async def get_user(self, user_id: str) -> dict[str, Any] | None: ...
    async def get_user_by_session_token(self, token: str) -> dict[str, Any] | None: ...
    async def provision_user(self, email: str, metadata: dict[str, Any]) -> ProvisionedUser: ...
    async def create_sign_in_token(self, email: str) -> str: ...

    # --- Research tasks ---
    async def create_research_task(self, record: TaskRecord) -> None: ...
    async def advance_task_status(
        self, deepresearch_id: str, status: TaskStatus, completed_at: datetime | None
    ) -> bool: ...
    async def get_research_task(self, deepresearch_id: str) -> TaskRecord | None: ...
    async def get_owned_research_task(self, task_id: str, user_id: str) -> TaskRecord | None: ...
    async def list_research_tasks(self, user_id: str, limit: int = 50) -> list[TaskRecord]: ...
    async def delete_research_task(self, task_id: str, user_id: str) -> bool: ...
    async def set_task_share(
        self, task_id: str, user_id: str, share_token: str | None
    ) -> TaskRecord | None: ...
    async def get_public_research_task(self, share_token: str) -> TaskRecord | None: ...

    # --- Quota counters ---
    async def get_rate_limit(self, user_id: str) -> dict[str, Any] | None: ...
    async def consume_rate_limit(self, user_id: str, scope: str, period: str, limit: int) -> int | None: ...
    async def release_rate_limit(self, user_id: str, scope: str, period: str) -> None: ...
    async def add_usage(self, user_id: str, amount: int, period: str) -> None: ...

    # --- Chat transcript ---
    async def append_chat_message(
        self,
        session_id: str,
        user_id: str,
        role: str,
        content: str,
        processing_time_ms: int | None = None,
    ) -> None: ...


_store: Store | None = None


def get_store() -> Store:
    """Return the process-wide store for the configured APP_MODE."""
    global _store
    if _store is None:
        mode = settings.app_mode_normalized
        if mode == "valyu":
            from history.services.supabase import SupabaseStore

            _store = SupabaseStore()
        elif mode == "self-hosted":
            from history.services.database import PostgresStore

            _store = PostgresStore(settings.database_url)
        elif mode == "memory":
            from history.services.memory_store import MemoryStore

            _store = MemoryStore()
        else:
            raise ValueError(f"Unsupported APP_MODE: {settings.app_mode}")
    return _store


def set_store(store: Store | None) -> None:
    global _store
    _store = store


async def close_store() -> None:
    """Release backend resources (the asyncpg pool) if the store was ever opened."""
    close = getattr(_store, "close", None)
    if close is not None:
        await close()
