from __future__ import annotations

from typing import Any

from history.models.events import EventType, SSEEvent


def task_created(task_id: str) -> SSEEvent:
    return SSEEvent(event=EventType.TASK_CREATED, data={"taskId": task_id})


def status(status: str, message: str | None = None) -> SSEEvent:
    data: dict[str, Any] = {"status": status}
    if message:
        data["message"] = message
    return SSEEvent(event=EventType.STATUS, data=data)


def progress(status: str, message: str, current_step: int, total_steps: int) -> SSEEvent:
    return SSEEvent(
        event=EventType.PROGRESS,
        data={
            "status": status,
            "message": message,
            "current_step": current_step,
            "total_steps": total_steps,
        },
    )


def message_update(content_type: str, data: dict[str, Any], message_role: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.MESSAGE_UPDATE,
        data={
            "content_type": content_type,
            "data": data,
            "message_role": message_role,
        },
    )


def content(text: str) -> SSEEvent:
    return SSEEvent(event=EventType.CONTENT, data={"content": text})


def sources(items: list[dict]) -> SSEEvent:
    return SSEEvent(event=EventType.SOURCES, data={"sources": items})


def images(items: list[Any]) -> SSEEvent:
    return SSEEvent(event=EventType.IMAGES, data={"images": items})


def error(message: str) -> SSEEvent:
    return SSEEvent(event=EventType.ERROR, data={"error": message})


def done() -> SSEEvent:
    return SSEEvent(event=EventType.DONE)


def continue_polling(task_id: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.CONTINUE_POLLING,
        data={
            "taskId": task_id,
            "message": "Research is still in progress. Client will continue polling...",
        },
    )
