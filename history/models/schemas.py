from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from history.models.task import Location


# --- Requests ---


class ChatMessage(BaseModel):
    role: str
    content: Any = ""

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        if isinstance(self.content, list):
            return " ".join(
                str(part.get("text", "")) for part in self.content if isinstance(part, dict)
            ).strip()
        return ""


class LocationIn(BaseModel):
    name: str
    lat: float = 0.0
    lng: float = 0.0

    def to_location(self) -> Location:
        return Location(name=self.name, lat=self.lat, lng=self.lng)


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = []
    sessionId: str | None = None
    location: LocationIn | None = None
    customInstructions: str | None = None
    valyuAccessToken: str | None = None


class TokenRequest(BaseModel):
    grant_type: str | None = None
    code: str | None = None
    code_verifier: str | None = None
    redirect_uri: str | None = None
    refresh_token: str | None = None


class SessionRequest(BaseModel):
    valyu_access_token: str | None = None
    access_token: str | None = None


class ProxyRequest(BaseModel):
    path: str | None = None
    method: str = "POST"
    body: Any = None


# --- Responses ---


class TaskResponse(BaseModel):
    id: str
    deepresearch_id: str
    location_name: str
    location_lat: float
    location_lng: float
    status: str
    created_at: str | None = None
    completed_at: str | None = None
    is_public: bool = False
    share_token: str | None = None
    shared_at: str | None = None


class HistoryResponse(BaseModel):
    tasks: list[TaskResponse]
