from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from history.config import settings
from history.models.identity import CallerSession
from history.services.logger import logger
from history.services.oauth import TokenProvider
from history.services.rate_limit import COOKIE_NAME, decode_anonymous_cookie
from history.services.store import get_store

SESSION_HEADER = "X-Session-Token"
ANONYMOUS_ID_HEADER = "X-Anonymous-Id"


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip() or None
    return None


async def get_caller(request: Request) -> CallerSession:
    """Resolve who is calling from the session header, bearer token and quota cookie."""
    token = bearer_token(request)
    provider_token = TokenProvider.from_access_token(token) if token else None

    if settings.is_self_hosted:
        caller = CallerSession.local()
        caller.provider_token = provider_token
        return caller

    session_token = request.headers.get(SESSION_HEADER)
    if session_token:
        try:
            user = await get_store().get_user_by_session_token(session_token)
        except Exception as e:
            logger.error(f"Session lookup failed: {e}")
            user = None
        if user:
            return CallerSession(
                user_id=str(user["id"]),
                email=user.get("email"),
                provider_token=provider_token,
                profile=user,
            )

    return CallerSession(
        provider_token=provider_token,
        anonymous_used=decode_anonymous_cookie(request.cookies.get(COOKIE_NAME)),
        anonymous_id=request.headers.get(ANONYMOUS_ID_HEADER),
    )


def error_response(status_code: int, error: str, message: str | None = None, **extra) -> JSONResponse:
    body = {"error": error}
    if message is not None:
        body["message"] = message
    body.update(extra)
    return JSONResponse(body, status_code=status_code)


def auth_required() -> JSONResponse:
    return error_response(401, "AUTH_REQUIRED", "Sign in with Valyu to continue", action="sign_in")
