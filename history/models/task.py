from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    @classmethod
    def parse(cls, value: Any) -> TaskStatus | None:
        try:
            return cls(str(value).lower().strip())
        except ValueError:
            return None


_STATUS_RANK = {
    TaskStatus.QUEUED: 0,
    TaskStatus.RUNNING: 1,
    TaskStatus.COMPLETED: 2,
    TaskStatus.FAILED: 2,
}


def can_advance(current: TaskStatus | None, new: TaskStatus) -> bool:
    """True when moving from ``current`` to ``new`` is a strictly forward transition."""
    if current is None:
        return True
    return new.rank > current.rank


def statuses_below(status: TaskStatus) -> list[str]:
    return [s.value for s in TaskStatus if s.rank < status.rank]


@dataclass(slots=True)
class Location:
    name: str
    lat: float = 0.0
    lng: float = 0.0


@dataclass(slots=True)
class TaskRecord:
    id: str
    deepresearch_id: str
    location_name: str
    location_lat: float
    location_lng: float
    status: TaskStatus = TaskStatus.QUEUED
    user_id: str | None = None
    anonymous_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    is_public: bool = False
    share_token: str | None = None
    shared_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> TaskRecord:
        return cls(
            id=str(row["id"]),
            deepresearch_id=str(row["deepresearch_id"]),
            location_name=row.get("location_name") or "Unknown",
            location_lat=float(row.get("location_lat") or 0.0),
            location_lng=float(row.get("location_lng") or 0.0),
            status=TaskStatus.parse(row.get("status")) or TaskStatus.QUEUED,
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            anonymous_id=row.get("anonymous_id"),
            created_at=_parse_dt(row.get("created_at")),
            updated_at=_parse_dt(row.get("updated_at")),
            completed_at=_parse_dt(row.get("completed_at")),
            is_public=bool(row.get("is_public") or False),
            share_token=row.get("share_token"),
            shared_at=_parse_dt(row.get("shared_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "deepresearch_id": self.deepresearch_id,
            "location_name": self.location_name,
            "location_lat": self.location_lat,
            "location_lng": self.location_lng,
            "status": self.status.value,
            "user_id": self.user_id,
            "anonymous_id": self.anonymous_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "is_public": self.is_public,
            "share_token": self.share_token,
            "shared_at": self.shared_at.isoformat() if self.shared_at else None,
        }


@dataclass(slots=True)
class TaskStatusSnapshot:
    """One provider status read, normalized."""

    status: TaskStatus
    current_step: int = 0
    total_steps: int = 10
    progress_message: str | None = None
    messages: list[dict[str, Any]] = field(default_factory=list)
    output: str = ""
    sources: list[dict[str, Any]] = field(default_factory=list)
    images: list[Any] = field(default_factory=list)
    error: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None
