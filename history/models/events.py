from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    TASK_CREATED = "task_created"
    STATUS = "status"
    PROGRESS = "progress"
    MESSAGE_UPDATE = "message_update"
    CONTENT = "content"
    SOURCES = "sources"
    IMAGES = "images"
    ERROR = "error"
    DONE = "done"
    CONTINUE_POLLING = "continue_polling"


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        """Frame body as sent on the wire: the event data tagged with its type."""
        return {"type": self.event.value, **self.data}

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.payload())}\n\n"

    def to_message(self) -> dict[str, str]:
        return {"event": self.event.value, "data": json.dumps(self.payload())}
