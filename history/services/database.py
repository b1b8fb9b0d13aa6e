"""PostgreSQL store for self-hosted deployments, using asyncpg."""

from __future__ import annotations

import json
import secrets
from datetime import datetime
from typing import Any
from uuid import UUID

import asyncpg

from history.models.identity import LOCAL_USER_EMAIL, LOCAL_USER_ID, ProvisionedUser
from history.models.task import TaskRecord, TaskStatus, statuses_below
from history.services.store import COUNTER_COLUMNS

TASK_COLUMNS = """
    id, user_id, deepresearch_id, location_name, location_lat, location_lng,
    status, created_at, updated_at, completed_at, anonymous_id, is_public,
    share_token, shared_at
"""


def _coerce_json_object(value: Any) -> dict[str, Any]:
    """Normalize JSON-string fields into dictionaries."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _user_row(record: asyncpg.Record | None) -> dict[str, Any] | None:
    if record is None:
        return None
    row = dict(record)
    row["id"] = str(row["id"])
    row["user_metadata"] = _coerce_json_object(row.get("user_metadata"))
    return row


class PostgresStore:
    def __init__(self, database_url: str):
        self.database_url = database_url
        self._pool: asyncpg.Pool | None = None

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RuntimeError("Database not configured. Set DATABASE_URL in .env")
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self.database_url, min_size=1, max_size=10)
            await self._ensure_local_user()
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _ensure_local_user(self) -> None:
        # Self-hosted deployments run as a single local account.
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO users (id, email)
                VALUES ($1, $2)
                ON CONFLICT (id) DO NOTHING
                """,
                UUID(LOCAL_USER_ID),
                LOCAL_USER_EMAIL,
            )

    # --- Users and sessions ---

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                """
                SELECT id, email, subscription_tier, subscription_status, user_metadata
                FROM users
                WHERE id = $1
                """,
                UUID(user_id),
            )
        return _user_row(record)

    async def get_user_by_session_token(self, token: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                """
                SELECT u.id, u.email, u.subscription_tier, u.subscription_status, u.user_metadata
                FROM sign_in_tokens t
                JOIN users u ON u.id = t.user_id
                WHERE t.token_hash = $1
                """,
                token,
            )
        return _user_row(record)

    async def provision_user(self, email: str, metadata: dict[str, Any]) -> ProvisionedUser:
        # The unique email constraint makes concurrent first logins converge on one row.
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                """
                INSERT INTO users (email, user_metadata)
                VALUES ($1, $2)
                ON CONFLICT (email) DO UPDATE
                SET user_metadata = EXCLUDED.user_metadata, updated_at = now()
                RETURNING id, email, (xmax = 0) AS created
                """,
                email,
                json.dumps(metadata),
            )
        return ProvisionedUser(id=str(record["id"]), email=record["email"], created=bool(record["created"]))

    async def create_sign_in_token(self, email: str) -> str:
        token = secrets.token_urlsafe(32)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            inserted = await conn.fetchrow(
                """
                INSERT INTO sign_in_tokens (token_hash, user_id)
                SELECT $1, id FROM users WHERE email = $2
                RETURNING token_hash
                """,
                token,
                email,
            )
        if inserted is None:
            raise KeyError(f"No account for {email}")
        return token

    # --- Research tasks ---

    async def create_research_task(self, record: TaskRecord) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO research_tasks
                    (id, user_id, deepresearch_id, location_name, location_lat, location_lng,
                     status, anonymous_id)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                UUID(record.id),
                UUID(record.user_id) if record.user_id else None,
                record.deepresearch_id,
                record.location_name,
                record.location_lat,
                record.location_lng,
                record.status.value,
                record.anonymous_id,
            )

    async def advance_task_status(
        self, deepresearch_id: str, status: TaskStatus, completed_at: datetime | None
    ) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE research_tasks
                SET status = $2,
                    completed_at = COALESCE($3, completed_at),
                    updated_at = now()
                WHERE deepresearch_id = $1 AND status = ANY($4::text[])
                """,
                deepresearch_id,
                status.value,
                completed_at,
                statuses_below(status),
            )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return result.split()[-1] != "0"

    async def get_research_task(self, deepresearch_id: str) -> TaskRecord | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                f"SELECT {TASK_COLUMNS} FROM research_tasks WHERE deepresearch_id = $1",
                deepresearch_id,
            )
        return TaskRecord.from_row(dict(record)) if record else None

    async def get_owned_research_task(self, task_id: str, user_id: str) -> TaskRecord | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                f"SELECT {TASK_COLUMNS} FROM research_tasks WHERE id = $1 AND user_id = $2",
                UUID(task_id),
                UUID(user_id),
            )
        return TaskRecord.from_row(dict(record)) if record else None

    async def list_research_tasks(self, user_id: str, limit: int = 50) -> list[TaskRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            records = await conn.fetch(
                f"""
                SELECT {TASK_COLUMNS} FROM research_tasks
                WHERE user_id = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                UUID(user_id),
                limit,
            )
        return [TaskRecord.from_row(dict(r)) for r in records]

    async def delete_research_task(self, task_id: str, user_id: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM research_tasks WHERE id = $1 AND user_id = $2",
                UUID(task_id),
                UUID(user_id),
            )
        return result.split()[-1] != "0"

    async def set_task_share(
        self, task_id: str, user_id: str, share_token: str | None
    ) -> TaskRecord | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                f"""
                UPDATE research_tasks
                SET is_public = $3,
                    share_token = $4,
                    shared_at = CASE WHEN $3 THEN now() ELSE NULL END,
                    updated_at = now()
                WHERE id = $1 AND user_id = $2
                RETURNING {TASK_COLUMNS}
                """,
                UUID(task_id),
                UUID(user_id),
                share_token is not None,
                share_token,
            )
        return TaskRecord.from_row(dict(record)) if record else None

    async def get_public_research_task(self, share_token: str) -> TaskRecord | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                f"""
                SELECT {TASK_COLUMNS} FROM research_tasks
                WHERE share_token = $1 AND is_public = true
                """,
                share_token,
            )
        return TaskRecord.from_row(dict(record)) if record else None

    # --- Quota counters ---

    async def get_rate_limit(self, user_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                """
                SELECT user_id, usage_count, reset_date, monthly_usage_count, monthly_reset_date
                FROM user_rate_limits
                WHERE user_id = $1
                """,
                UUID(user_id),
            )
        return dict(record) if record else None

    async def consume_rate_limit(self, user_id: str, scope: str, period: str, limit: int) -> int | None:
        if limit <= 0:
            return None
        count_col, marker_col = COUNTER_COLUMNS[scope]
        if marker_col is None:
            next_count = f"user_rate_limits.{count_col} + 1"
            guard = f"user_rate_limits.{count_col} < $3"
            set_marker = ""
        else:
            # A stale period marker restarts the counter at 1.
            next_count = (
                f"CASE WHEN user_rate_limits.{marker_col} = $2 "
                f"THEN user_rate_limits.{count_col} + 1 ELSE 1 END"
            )
            guard = f"(user_rate_limits.{marker_col} <> $2 OR user_rate_limits.{count_col} < $3)"
            set_marker = f"{marker_col} = $2,"
        insert_marker_col = "monthly_reset_date" if scope == "monthly" else "reset_date"

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                f"""
                INSERT INTO user_rate_limits (user_id, {count_col}, {insert_marker_col})
                VALUES ($1, 1, $2)
                ON CONFLICT (user_id) DO UPDATE
                SET {count_col} = {next_count},
                    {set_marker}
                    last_request_at = now(),
                    updated_at = now()
                WHERE {guard} AND $3 > 0
                RETURNING {count_col} AS used
                """,
                UUID(user_id),
                period,
                limit,
            )
        return int(record["used"]) if record else None

    async def release_rate_limit(self, user_id: str, scope: str, period: str) -> None:
        count_col, marker_col = COUNTER_COLUMNS[scope]
        marker_guard = f"AND {marker_col} = $2" if marker_col else "AND $2::text IS NOT NULL"
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE user_rate_limits
                SET {count_col} = GREATEST({count_col} - 1, 0), updated_at = now()
                WHERE user_id = $1 {marker_guard}
                """,
                UUID(user_id),
                period,
            )

    async def add_usage(self, user_id: str, amount: int, period: str) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_rate_limits (user_id, usage_count, reset_date)
                VALUES ($1, $2, $3)
                ON CONFLICT (user_id) DO UPDATE
                SET usage_count = CASE WHEN user_rate_limits.reset_date = $3
                                       THEN user_rate_limits.usage_count + $2 ELSE $2 END,
                    reset_date = $3,
                    last_request_at = now(),
                    updated_at = now()
                """,
                UUID(user_id),
                amount,
                period,
            )

    # --- Chat transcript ---

    async def append_chat_message(
        self,
        session_id: str,
        user_id: str,
        role: str,
        content: str,
        processing_time_ms: int | None = None,
    ) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO chat_sessions (id, user_id, title, last_message_at)
                    VALUES ($1, $2, $3, now())
                    ON CONFLICT (id) DO UPDATE SET last_message_at = now(), updated_at = now()
                    """,
                    UUID(session_id),
                    UUID(user_id),
                    content[:100] if role == "user" else "",
                )
                await conn.execute(
                    """
                    INSERT INTO chat_messages (session_id, role, content, processing_time_ms)
                    VALUES ($1, $2, $3, $4)
                    """,
                    UUID(session_id),
                    role,
                    json.dumps([{"type": "text", "text": content}]),
                    processing_time_ms,
                )
