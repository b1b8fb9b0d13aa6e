from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Awaitable, Callable

from history.config import settings
from history.models.events import SSEEvent
from history.models.identity import CallerSession
from history.models.task import Location, TaskRecord, TaskStatus, TaskStatusSnapshot
from history.services import streaming
from history.services.ledger import UsageLedger
from history.services.logger import log_event, logger
from history.tools.deepresearch import DeepResearchClient, ProviderError

DEFAULT_RESEARCH_PROMPT = (
    "Provide a comprehensive historical overview of this location, covering major events, "
    "cultural significance, and key developments throughout history."
)
MIN_CUSTOM_INSTRUCTIONS_LENGTH = 20


def _normalize(text: str) -> str:
    return " ".join(text.split()).casefold()


def build_research_query(text: str, location: Location | None, custom_instructions: str | None = None) -> str:
    """Turn the user's message into the query sent to the provider."""
    if custom_instructions and len(custom_instructions.strip()) >= MIN_CUSTOM_INSTRUCTIONS_LENGTH:
        return custom_instructions.strip()
    if location is None:
        return text

    message = _normalize(text or "")
    name = _normalize(location.name)
    if message in ("", name, f"research the history of {name}"):
        return f"{DEFAULT_RESEARCH_PROMPT}\n\nLocation: {location.name}"
    return text


class Transcript:
    """Relays provider transcript messages that have not been emitted yet."""

    RELAYED_ROLES = ("assistant", "tool")

    def __init__(self) -> None:
        self.emitted = 0
        self._announced_calls: set[str] = set()

    def delta(self, messages: list[dict[str, Any]]) -> list[SSEEvent]:
        if not isinstance(messages, list) or len(messages) <= self.emitted:
            return []
        events: list[SSEEvent] = []
        for message in messages[self.emitted:]:
            role = message.get("role") if isinstance(message, dict) else None
            items = message.get("content") if isinstance(message, dict) else None
            if role not in self.RELAYED_ROLES or not isinstance(items, list):
                continue
            for item in items:
                if not isinstance(item, dict):
                    continue
                self._track_tool_call(item)
                events.append(streaming.message_update(str(item.get("type", "")), item, role))
        self.emitted = len(messages)
        return events

    def _track_tool_call(self, item: dict[str, Any]) -> None:
        if item.get("type") == "tool_use" and item.get("id"):
            self._announced_calls.add(str(item["id"]))
        elif item.get("type") == "tool_result":
            call_id = item.get("tool_use_id")
            if call_id and str(call_id) not in self._announced_calls:
                logger.warning(f"Tool result for unannounced call {call_id}")


@dataclass
class SubmittedTask:
    task_id: str
    query: str
    record: TaskRecord | None = None


class TaskOrchestrator:
    """Runs one research task for one caller: submit, then relay progress.

    Owns a provider client for its lifetime; ``stream_progress`` closes it on
    every exit path, including the consumer going away mid-stream.
    """

    def __init__(
        self,
        caller: CallerSession,
        *,
        client: DeepResearchClient | None = None,
        ledger: UsageLedger | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        poll_interval: float | None = None,
        max_polls: int | None = None,
    ):
        self.caller = caller
        self.client = client or DeepResearchClient(token_provider=caller.provider_token)
        self.ledger = ledger or UsageLedger()
        self._sleep = sleep
        self.poll_interval = settings.poll_interval_seconds if poll_interval is None else poll_interval
        self.max_polls = settings.max_polls if max_polls is None else max_polls

    async def aclose(self) -> None:
        await self.client.aclose()

    async def submit_task(self, query: str, location: Location) -> SubmittedTask:
        task_id = await self.client.create_task(query, model=settings.deepresearch_model)
        record = await self.ledger.record_created(task_id, location, self.caller)
        log_event(
            event_type="task_submitted",
            message="Research task created",
            task_id=task_id,
            location=location.name,
            user_id=self.caller.user_id,
        )
        return SubmittedTask(task_id=task_id, query=query, record=record)

    async def stream_progress(
        self, task_id: str, *, session_id: str | None = None
    ) -> AsyncGenerator[SSEEvent, None]:
        started = time.monotonic()
        transcript = Transcript()
        seen = TaskStatus.QUEUED
        try:
            yield streaming.task_created(task_id)
            yield streaming.status(TaskStatus.QUEUED.value, "Research task queued...")

            for _ in range(self.max_polls):
                await self._sleep(self.poll_interval)
                snapshot = await self.client.get_status(task_id)

                if snapshot.status.rank < seen.rank:
                    continue

                if snapshot.status == TaskStatus.RUNNING:
                    if seen != TaskStatus.RUNNING:
                        seen = TaskStatus.RUNNING
                        await self.ledger.record_status(task_id, TaskStatus.RUNNING)
                    yield self._progress(snapshot)
                    for event in transcript.delta(snapshot.messages):
                        yield event

                elif snapshot.status == TaskStatus.COMPLETED:
                    for event in transcript.delta(snapshot.messages):
                        yield event
                    yield streaming.content(snapshot.output)
                    if snapshot.sources:
                        yield streaming.sources(snapshot.sources)
                    if snapshot.images:
                        yield streaming.images(snapshot.images)
                    await self.ledger.record_status(task_id, TaskStatus.COMPLETED)
                    await self._save_report(session_id, snapshot.output, started)
                    log_event("task_completed", "Research task completed", task_id=task_id)
                    yield streaming.done()
                    return

                elif snapshot.status == TaskStatus.FAILED:
                    await self.ledger.record_status(task_id, TaskStatus.FAILED)
                    log_event("task_failed", "Research task failed", task_id=task_id, error=snapshot.error)
                    yield streaming.error(snapshot.error or "Research task failed")
                    return

            log_event("task_poll_budget_exhausted", "Handing polling over to the client", task_id=task_id)
            yield streaming.continue_polling(task_id)
        except ProviderError as e:
            log_event("stream_error", "Failed to get task status", task_id=task_id, error=e.detail)
            yield streaming.error(f"Failed to get task status: {e.detail}")
        except Exception as e:
            log_event("stream_error", "Unhandled error in research stream", task_id=task_id, error=str(e))
            yield streaming.error(str(e) or "Unknown error")
        finally:
            await self.aclose()

    def _progress(self, snapshot: TaskStatusSnapshot) -> SSEEvent:
        message = snapshot.progress_message or (
            f"Researching... ({snapshot.current_step}/{snapshot.total_steps} steps)"
        )
        return streaming.progress(
            TaskStatus.RUNNING.value, message, snapshot.current_step, snapshot.total_steps
        )

    async def _save_report(self, session_id: str | None, output: str, started: float) -> None:
        if not session_id or self.caller.user_id is None:
            return
        try:
            await self.ledger.store.append_chat_message(
                session_id,
                self.caller.user_id,
                "assistant",
                output,
                processing_time_ms=int((time.monotonic() - started) * 1000),
            )
        except Exception as e:
            log_event("db_error", "Failed to save assistant message", session_id=session_id, error=str(e))

    async def poll_status(self, task_id: str) -> dict[str, Any]:
        """One status check for clients that took over polling.

        The status reported never ranks below a non-terminal status the ledger
        already holds. A terminal ledger status is only reported together with
        the provider's terminal payload, so a lagging provider reading keeps
        the client polling instead of ending the run without a report.
        """
        try:
            snapshot = await self.client.get_status(task_id)
        finally:
            await self.aclose()

        if snapshot.status != TaskStatus.QUEUED:
            await self.ledger.record_status(task_id, snapshot.status)

        payload = dict(snapshot.raw)
        payload["status"] = snapshot.status.value
        try:
            record = await self.ledger.get(task_id)
        except Exception as e:
            log_event("db_error", "Failed to read task status", task_id=task_id, error=str(e))
            record = None
        if (
            record is not None
            and record.status.rank > snapshot.status.rank
            and not record.status.is_terminal
        ):
            payload["status"] = record.status.value
        return payload
