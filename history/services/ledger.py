from __future__ import annotations

import re
import secrets
import string
from datetime import datetime, timezone
from uuid import uuid4

from history.models.identity import CallerSession
from history.models.task import Location, TaskRecord, TaskStatus
from history.services.logger import log_db_operation
from history.services.store import Store, get_store

SHARE_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase
SHARE_SUFFIX_LENGTH = 8
SLUG_MAX_LENGTH = 50


def location_slug(name: str) -> str:
    slug = "-".join(re.findall(r"[a-z0-9]+", name.lower()))
    return slug[:SLUG_MAX_LENGTH].strip("-") or "location"


def make_share_token(location_name: str) -> str:
    suffix = "".join(secrets.choice(SHARE_SUFFIX_ALPHABET) for _ in range(SHARE_SUFFIX_LENGTH))
    return f"{location_slug(location_name)}-{suffix}"


class UsageLedger:
    """Task metadata kept alongside the provider, one row per accepted submission.

    Status write-backs are conditional on the stored status ranking strictly
    below the new one, so repeated or out-of-order writes are no-ops.
    """

    def __init__(self, store: Store | None = None):
        self.store = store if store is not None else get_store()

    async def record_created(
        self, provider_task_id: str, location: Location, caller: CallerSession
    ) -> TaskRecord | None:
        if caller.is_anonymous and not caller.anonymous_id:
            return None
        record = TaskRecord(
            id=str(uuid4()),
            deepresearch_id=provider_task_id,
            location_name=location.name,
            location_lat=location.lat,
            location_lng=location.lng,
            status=TaskStatus.QUEUED,
            user_id=caller.user_id,
            anonymous_id=caller.anonymous_id if caller.is_anonymous else None,
        )
        try:
            await self.store.create_research_task(record)
        except Exception as e:
            log_db_operation("insert", "research_tasks", "failed", details=provider_task_id, error=str(e))
            return None
        log_db_operation("insert", "research_tasks", "queued", details=provider_task_id)
        return record

    async def record_status(self, provider_task_id: str, status: TaskStatus) -> bool:
        completed_at = datetime.now(timezone.utc) if status.is_terminal else None
        try:
            changed = await self.store.advance_task_status(provider_task_id, status, completed_at)
        except Exception as e:
            log_db_operation("update", "research_tasks", "failed", details=provider_task_id, error=str(e))
            return False
        if changed:
            log_db_operation("update", "research_tasks", status.value, details=provider_task_id)
        return changed

    async def get(self, provider_task_id: str) -> TaskRecord | None:
        return await self.store.get_research_task(provider_task_id)

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[TaskRecord]:
        return await self.store.list_research_tasks(user_id, limit)

    async def delete(self, task_id: str, user_id: str) -> bool:
        deleted = await self.store.delete_research_task(task_id, user_id)
        if deleted:
            log_db_operation("delete", "research_tasks", "deleted", details=task_id)
        return deleted

    async def share(self, task_id: str, user_id: str) -> TaskRecord | None:
        task = await self.store.get_owned_research_task(task_id, user_id)
        if task is None:
            return None
        if task.is_public and task.share_token:
            return task
        record = await self.store.set_task_share(task_id, user_id, make_share_token(task.location_name))
        if record:
            log_db_operation("share", "research_tasks", "public", details=task_id)
        return record

    async def unshare(self, task_id: str, user_id: str) -> TaskRecord | None:
        return await self.store.set_task_share(task_id, user_id, None)

    async def get_public(self, share_token: str) -> TaskRecord | None:
        return await self.store.get_public_research_task(share_token)
