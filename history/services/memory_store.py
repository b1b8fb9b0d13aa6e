from __future__ import annotations

import asyncio
import secrets
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from history.models.identity import ProvisionedUser
from history.models.task import TaskRecord, TaskStatus, can_advance
from history.services.store import COUNTER_COLUMNS


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process store. Every mutation runs under one lock."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.users: dict[str, dict[str, Any]] = {}
        self.users_by_email: dict[str, str] = {}
        self.sessions: dict[str, str] = {}
        self.tasks: dict[str, TaskRecord] = {}
        self.rate_limits: dict[str, dict[str, Any]] = {}
        self.chat_messages: dict[str, list[dict[str, Any]]] = {}
        self.status_writes = 0

    # --- Users and sessions ---

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        user = self.users.get(user_id)
        return dict(user) if user else None

    async def get_user_by_session_token(self, token: str) -> dict[str, Any] | None:
        user_id = self.sessions.get(token)
        return await self.get_user(user_id) if user_id else None

    async def provision_user(self, email: str, metadata: dict[str, Any]) -> ProvisionedUser:
        key = email.lower()
        async with self._lock:
            existing = self.users_by_email.get(key)
            if existing:
                self.users[existing]["user_metadata"] = dict(metadata)
                return ProvisionedUser(id=existing, email=email, created=False)
            user_id = str(uuid4())
            self.users[user_id] = {
                "id": user_id,
                "email": email,
                "subscription_tier": "free",
                "subscription_status": "inactive",
                "user_metadata": dict(metadata),
            }
            self.users_by_email[key] = user_id
            return ProvisionedUser(id=user_id, email=email, created=True)

    async def create_sign_in_token(self, email: str) -> str:
        user_id = self.users_by_email.get(email.lower())
        if user_id is None:
            raise KeyError(f"No account for {email}")
        token = secrets.token_urlsafe(32)
        self.sessions[token] = user_id
        return token

    # --- Research tasks ---

    async def create_research_task(self, record: TaskRecord) -> None:
        async with self._lock:
            if any(t.deepresearch_id == record.deepresearch_id for t in self.tasks.values()):
                raise ValueError(f"duplicate deepresearch_id {record.deepresearch_id}")
            now = _now()
            self.tasks[record.id] = replace(record, created_at=record.created_at or now, updated_at=now)

    def _find(self, deepresearch_id: str) -> TaskRecord | None:
        return next((t for t in self.tasks.values() if t.deepresearch_id == deepresearch_id), None)

    async def advance_task_status(
        self, deepresearch_id: str, status: TaskStatus, completed_at: datetime | None
    ) -> bool:
        async with self._lock:
            task = self._find(deepresearch_id)
            if task is None or not can_advance(task.status, status):
                return False
            task.status = status
            task.updated_at = _now()
            if completed_at is not None:
                task.completed_at = completed_at
            self.status_writes += 1
            return True

    async def get_research_task(self, deepresearch_id: str) -> TaskRecord | None:
        return self._find(deepresearch_id)

    async def get_owned_research_task(self, task_id: str, user_id: str) -> TaskRecord | None:
        task = self.tasks.get(task_id)
        return task if task is not None and task.user_id == user_id else None

    async def list_research_tasks(self, user_id: str, limit: int = 50) -> list[TaskRecord]:
        owned = [t for t in self.tasks.values() if t.user_id == user_id]
        owned.sort(key=lambda t: t.created_at or _now(), reverse=True)
        return owned[:limit]

    async def delete_research_task(self, task_id: str, user_id: str) -> bool:
        async with self._lock:
            task = self.tasks.get(task_id)
            if task is None or task.user_id != user_id:
                return False
            del self.tasks[task_id]
            return True

    async def set_task_share(
        self, task_id: str, user_id: str, share_token: str | None
    ) -> TaskRecord | None:
        async with self._lock:
            task = self.tasks.get(task_id)
            if task is None or task.user_id != user_id:
                return None
            task.is_public = share_token is not None
            task.share_token = share_token
            task.shared_at = _now() if share_token else None
            return task

    async def get_public_research_task(self, share_token: str) -> TaskRecord | None:
        return next(
            (t for t in self.tasks.values() if t.is_public and t.share_token == share_token),
            None,
        )

    # --- Quota counters ---

    async def get_rate_limit(self, user_id: str) -> dict[str, Any] | None:
        row = self.rate_limits.get(user_id)
        return dict(row) if row else None

    def _row(self, user_id: str) -> dict[str, Any]:
        return self.rate_limits.setdefault(
            user_id,
            {
                "user_id": user_id,
                "usage_count": 0,
                "reset_date": "",
                "monthly_usage_count": 0,
                "monthly_reset_date": "",
            },
        )

    async def consume_rate_limit(self, user_id: str, scope: str, period: str, limit: int) -> int | None:
        count_col, marker_col = COUNTER_COLUMNS[scope]
        async with self._lock:
            row = self._row(user_id)
            used = row[count_col]
            if marker_col is not None and row[marker_col] != period:
                used = 0
            if used >= limit:
                return None
            row[count_col] = used + 1
            if marker_col is not None:
                row[marker_col] = period
            row["last_request_at"] = _now()
            return row[count_col]

    async def release_rate_limit(self, user_id: str, scope: str, period: str) -> None:
        count_col, marker_col = COUNTER_COLUMNS[scope]
        async with self._lock:
            row = self.rate_limits.get(user_id)
            if row is None:
                return
            if marker_col is not None and row[marker_col] != period:
                return
            row[count_col] = max(row[count_col] - 1, 0)

    async def add_usage(self, user_id: str, amount: int, period: str) -> None:
        async with self._lock:
            row = self._row(user_id)
            if row["reset_date"] != period:
                row["usage_count"] = 0
                row["reset_date"] = period
            row["usage_count"] += amount

    # --- Chat transcript ---

    async def append_chat_message(
        self,
        session_id: str,
        user_id: str,
        role: str,
        content: str,
        processing_time_ms: int | None = None,
    ) -> None:
        self.chat_messages.setdefault(session_id, []).append(
            {
                "id": str(uuid4()),
                "user_id": user_id,
                "role": role,
                "content": content,
                "processing_time_ms": processing_time_ms,
                "created_at": _now(),
            }
        )
