from __future__ import annotations

import re
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from history.models.identity import CallerSession
from history.models.task import Location, TaskStatus, can_advance
from history.services.ledger import UsageLedger, location_slug, make_share_token

PARIS = Location(name="Paris, France", lat=48.8566, lng=2.3522)


async def _signed_in(store) -> CallerSession:
    account = await store.provision_user("grace@example.com", {})
    return CallerSession(user_id=account.id, email=account.email)


def test_can_advance_only_moves_forward():
    assert can_advance(TaskStatus.QUEUED, TaskStatus.RUNNING)
    assert can_advance(TaskStatus.RUNNING, TaskStatus.COMPLETED)
    assert can_advance(TaskStatus.QUEUED, TaskStatus.FAILED)
    assert not can_advance(TaskStatus.RUNNING, TaskStatus.QUEUED)
    assert not can_advance(TaskStatus.COMPLETED, TaskStatus.RUNNING)
    assert not can_advance(TaskStatus.COMPLETED, TaskStatus.FAILED)
    assert not can_advance(TaskStatus.RUNNING, TaskStatus.RUNNING)


@pytest.mark.asyncio
async def test_record_created_stores_queued_row(store):
    caller = await _signed_in(store)
    ledger = UsageLedger(store)

    record = await ledger.record_created("dr_1", PARIS, caller)

    assert record is not None
    stored = await ledger.get("dr_1")
    assert stored.status == TaskStatus.QUEUED
    assert stored.user_id == caller.user_id
    assert stored.location_name == "Paris, France"
    assert stored.location_lat == pytest.approx(48.8566)


@pytest.mark.asyncio
async def test_anonymous_without_id_is_not_recorded(store):
    ledger = UsageLedger(store)

    assert await ledger.record_created("dr_1", PARIS, CallerSession()) is None
    assert store.tasks == {}


@pytest.mark.asyncio
async def test_anonymous_with_id_is_recorded(store):
    ledger = UsageLedger(store)

    record = await ledger.record_created("dr_1", PARIS, CallerSession(anonymous_id="anon-42"))

    assert record.anonymous_id == "anon-42"
    assert record.user_id is None


@pytest.mark.asyncio
async def test_status_never_regresses(store):
    caller = await _signed_in(store)
    ledger = UsageLedger(store)
    await ledger.record_created("dr_1", PARIS, caller)

    assert await ledger.record_status("dr_1", TaskStatus.RUNNING) is True
    assert await ledger.record_status("dr_1", TaskStatus.COMPLETED) is True
    assert await ledger.record_status("dr_1", TaskStatus.RUNNING) is False
    assert await ledger.record_status("dr_1", TaskStatus.FAILED) is False

    stored = await ledger.get("dr_1")
    assert stored.status == TaskStatus.COMPLETED
    assert stored.completed_at is not None


@pytest.mark.asyncio
async def test_repeated_terminal_write_is_a_no_op(store):
    caller = await _signed_in(store)
    ledger = UsageLedger(store)
    await ledger.record_created("dr_1", PARIS, caller)

    await ledger.record_status("dr_1", TaskStatus.COMPLETED)
    first_completed_at = (await ledger.get("dr_1")).completed_at
    await ledger.record_status("dr_1", TaskStatus.COMPLETED)
    await ledger.record_status("dr_1", TaskStatus.COMPLETED)

    assert store.status_writes == 1
    assert (await ledger.get("dr_1")).completed_at == first_completed_at


@pytest.mark.asyncio
async def test_store_failures_are_swallowed(store):
    failing = AsyncMock()
    failing.create_research_task.side_effect = RuntimeError("db down")
    failing.advance_task_status.side_effect = RuntimeError("db down")
    ledger = UsageLedger(failing)

    assert await ledger.record_created("dr_1", PARIS, await _signed_in(store)) is None
    assert await ledger.record_status("dr_1", TaskStatus.RUNNING) is False


@pytest.mark.asyncio
async def test_share_and_unshare(store):
    caller = await _signed_in(store)
    ledger = UsageLedger(store)
    record = await ledger.record_created("dr_1", PARIS, caller)

    shared = await ledger.share(record.id, caller.user_id)
    token = shared.share_token

    assert shared.is_public is True
    assert re.fullmatch(r"paris-france-[0-9a-z]{8}", token)
    assert (await ledger.get_public(token)).id == record.id
    # Sharing again keeps the same link.
    assert (await ledger.share(record.id, caller.user_id)).share_token == token

    await ledger.unshare(record.id, caller.user_id)
    assert await ledger.get_public(token) is None


@pytest.mark.asyncio
async def test_other_users_cannot_share_or_delete(store):
    owner = await _signed_in(store)
    stranger = await store.provision_user("mallory@example.com", {})
    ledger = UsageLedger(store)
    record = await ledger.record_created("dr_1", PARIS, owner)

    assert await ledger.share(record.id, stranger.id) is None
    assert await ledger.delete(record.id, stranger.id) is False
    assert await ledger.delete(record.id, owner.user_id) is True
    assert await ledger.list_for_user(owner.user_id) == []


def test_location_slug():
    assert location_slug("Tristan da Cunha") == "tristan-da-cunha"
    assert location_slug("  São Paulo!! ") == "s-o-paulo"
    assert location_slug("???") == "location"
    assert len(location_slug("x" * 80)) == 50


def test_share_token_suffix_is_random():
    assert make_share_token("Rome") != make_share_token("Rome")


@pytest.mark.asyncio
async def test_share_finds_old_tasks_of_busy_users(store):
    caller = await _signed_in(store)
    ledger = UsageLedger(store)
    oldest = await ledger.record_created("dr_0", PARIS, caller)
    for n in range(1, 1001):
        await ledger.record_created(f"dr_{n}", PARIS, caller)
    store.tasks[oldest.id].created_at = datetime(2020, 1, 1, tzinfo=timezone.utc)

    assert oldest.id not in [t.id for t in await ledger.list_for_user(caller.user_id, limit=1000)]
    shared = await ledger.share(oldest.id, caller.user_id)

    assert shared is not None
    assert shared.id == oldest.id
    assert shared.is_public is True
