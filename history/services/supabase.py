from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

from supabase import Client, create_client

from history.config import settings
from history.models.identity import ProvisionedUser
from history.models.task import TaskRecord, TaskStatus, statuses_below
from history.services.env_safety import sanitize_ssl_keylogfile
from history.services.logger import log_db_operation, logger

# The admin API has no lookup by email; existing accounts are found by paging.
USER_LOOKUP_MAX_PAGES = 10
USER_LOOKUP_PAGE_SIZE = 1000


def get_client() -> Client:
    sanitize_ssl_keylogfile()
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


_client: Client | None = None


def client() -> Client:
    global _client
    if _client is None:
        _client = get_client()
    return _client


async def _execute(query: Any) -> Any:
    """Run blocking Supabase query execution in a worker thread."""
    return await asyncio.to_thread(query.execute)


def _coerce_json_object(value: Any) -> dict[str, Any]:
    """Normalize legacy JSON-string fields into dictionaries."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseStore:
    """Hosted store: History's own Supabase project, accessed with the service role."""

    # --- Users and sessions ---

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        result = await _execute(
            client()
            .table("users")
            .select("id, email, subscription_tier, subscription_status, user_metadata")
            .eq("id", user_id)
            .limit(1)
        )
        if not result.data:
            return None
        row = result.data[0]
        row["user_metadata"] = _coerce_json_object(row.get("user_metadata"))
        return row

    async def get_user_by_session_token(self, token: str) -> dict[str, Any] | None:
        # Session tokens are Supabase access tokens minted after the magic-link sign in.
        try:
            response = await asyncio.to_thread(client().auth.get_user, token)
        except Exception as e:
            logger.debug(f"Session token rejected: {e}")
            return None
        if response is None or response.user is None:
            return None
        return await self.get_user(response.user.id)

    async def _find_auth_user_id(self, email: str) -> str | None:
        admin = client().auth.admin
        wanted = email.lower()
        for page in range(1, USER_LOOKUP_MAX_PAGES + 1):
            users = await asyncio.to_thread(admin.list_users, page=page, per_page=USER_LOOKUP_PAGE_SIZE)
            if not users:
                return None
            for user in users:
                if (user.email or "").lower() == wanted:
                    return user.id
        return None

    async def provision_user(self, email: str, metadata: dict[str, Any]) -> ProvisionedUser:
        admin = client().auth.admin
        created = True
        try:
            response = await asyncio.to_thread(
                admin.create_user,
                {"email": email, "email_confirm": True, "user_metadata": metadata},
            )
            user_id = response.user.id
        except Exception as e:
            if getattr(e, "code", None) != "email_exists":
                log_db_operation("create_user", "auth.users", "failed", error=str(e))
                raise
            created = False
            user_id = await self._find_auth_user_id(email)
            if user_id is None:
                log_db_operation("lookup_user", "auth.users", "failed", details=email, error="not found")
                raise LookupError("User exists but could not be found") from e
            await asyncio.to_thread(admin.update_user_by_id, user_id, {"user_metadata": metadata})

        await _execute(
            client()
            .table("users")
            .upsert(
                {
                    "id": user_id,
                    "email": email,
                    "avatar_url": metadata.get("avatar_url"),
                    "updated_at": _now_iso(),
                },
                on_conflict="id",
            )
        )
        log_db_operation("provision_user", "users", "created" if created else "updated", details=user_id)
        return ProvisionedUser(id=user_id, email=email, created=created)

    async def create_sign_in_token(self, email: str) -> str:
        response = await asyncio.to_thread(
            client().auth.admin.generate_link,
            {"type": "magiclink", "email": email},
        )
        return response.properties.hashed_token

    # --- Research tasks ---

    async def create_research_task(self, record: TaskRecord) -> None:
        await _execute(
            client()
            .table("research_tasks")
            .insert(
                {
                    "id": record.id,
                    "user_id": record.user_id,
                    "deepresearch_id": record.deepresearch_id,
                    "location_name": record.location_name,
                    "location_lat": record.location_lat,
                    "location_lng": record.location_lng,
                    "status": record.status.value,
                    "anonymous_id": record.anonymous_id,
                }
            )
        )

    async def advance_task_status(
        self, deepresearch_id: str, status: TaskStatus, completed_at: datetime | None
    ) -> bool:
        update: dict[str, Any] = {"status": status.value, "updated_at": _now_iso()}
        if completed_at is not None:
            update["completed_at"] = completed_at.isoformat()
        result = await _execute(
            client()
            .table("research_tasks")
            .update(update)
            .eq("deepresearch_id", deepresearch_id)
            .in_("status", statuses_below(status))
        )
        return bool(result.data)

    async def get_research_task(self, deepresearch_id: str) -> TaskRecord | None:
        result = await _execute(
            client().table("research_tasks").select("*").eq("deepresearch_id", deepresearch_id).limit(1)
        )
        return TaskRecord.from_row(result.data[0]) if result.data else None

    async def get_owned_research_task(self, task_id: str, user_id: str) -> TaskRecord | None:
        result = await _execute(
            client().table("research_tasks").select("*").eq("id", task_id).eq("user_id", user_id).limit(1)
        )
        return TaskRecord.from_row(result.data[0]) if result.data else None

    async def list_research_tasks(self, user_id: str, limit: int = 50) -> list[TaskRecord]:
        result = await _execute(
            client()
            .table("research_tasks")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit)
        )
        return [TaskRecord.from_row(row) for row in result.data or []]

    async def delete_research_task(self, task_id: str, user_id: str) -> bool:
        result = await _execute(
            client().table("research_tasks").delete().eq("id", task_id).eq("user_id", user_id)
        )
        return bool(result.data)

    async def set_task_share(
        self, task_id: str, user_id: str, share_token: str | None
    ) -> TaskRecord | None:
        update = {
            "is_public": share_token is not None,
            "share_token": share_token,
            "shared_at": _now_iso() if share_token else None,
            "updated_at": _now_iso(),
        }
        result = await _execute(
            client().table("research_tasks").update(update).eq("id", task_id).eq("user_id", user_id)
        )
        return TaskRecord.from_row(result.data[0]) if result.data else None

    async def get_public_research_task(self, share_token: str) -> TaskRecord | None:
        result = await _execute(
            client()
            .table("research_tasks")
            .select("*")
            .eq("share_token", share_token)
            .eq("is_public", True)
            .limit(1)
        )
        return TaskRecord.from_row(result.data[0]) if result.data else None

    # --- Quota counters ---

    async def get_rate_limit(self, user_id: str) -> dict[str, Any] | None:
        result = await _execute(
            client()
            .table("user_rate_limits")
            .select("user_id, usage_count, reset_date, monthly_usage_count, monthly_reset_date")
            .eq("user_id", user_id)
            .limit(1)
        )
        return result.data[0] if result.data else None

    async def consume_rate_limit(self, user_id: str, scope: str, period: str, limit: int) -> int | None:
        # The SQL function does the compare-and-increment in one statement.
        result = await _execute(
            client().rpc(
                "consume_rate_limit",
                {"p_user_id": user_id, "p_scope": scope, "p_period": period, "p_limit": limit},
            )
        )
        data = result.data
        if isinstance(data, list):
            data = data[0] if data else None
        if isinstance(data, dict):
            data = data.get("consume_rate_limit")
        return int(data) if data is not None else None

    async def release_rate_limit(self, user_id: str, scope: str, period: str) -> None:
        await _execute(
            client().rpc(
                "release_rate_limit",
                {"p_user_id": user_id, "p_scope": scope, "p_period": period},
            )
        )

    async def add_usage(self, user_id: str, amount: int, period: str) -> None:
        await _execute(
            client().rpc(
                "add_rate_limit_usage",
                {"p_user_id": user_id, "p_amount": amount, "p_period": period},
            )
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
        session = await _execute(
            client().table("chat_sessions").select("id").eq("id", session_id).eq("user_id", user_id).limit(1)
        )
        if not session.data:
            await _execute(
                client()
                .table("chat_sessions")
                .insert({"id": session_id, "user_id": user_id, "title": content[:100] if role == "user" else ""})
            )
        await _execute(
            client()
            .table("chat_messages")
            .insert(
                {
                    "session_id": session_id,
                    "role": role,
                    "content": [{"type": "text", "text": content}],
                    "processing_time_ms": processing_time_ms,
                }
            )
        )
        await _execute(
            client()
            .table("chat_sessions")
            .update({"last_message_at": _now_iso(), "updated_at": _now_iso()})
            .eq("id", session_id)
        )
