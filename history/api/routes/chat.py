from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from history.api.deps import auth_required, bearer_token, error_response, get_caller
from history.config import settings
from history.models.identity import CallerSession
from history.models.schemas import ChatRequest
from history.models.task import Location
from history.services import logger as log_service
from history.services.oauth import TokenProvider
from history.services.orchestrator import TaskOrchestrator, build_research_query
from history.services.rate_limit import (
    COOKIE_MAX_AGE,
    COOKIE_NAME,
    RateLimiter,
    RateLimitResult,
    encode_anonymous_cookie,
)
from history.tools.deepresearch import DeepResearchClient, InsufficientCreditsError, ProviderError

router = APIRouter(prefix="/api/chat", tags=["chat"])

NO_CACHE = "no-cache, no-store, must-revalidate"


def rate_limited(result: RateLimitResult) -> JSONResponse:
    return error_response(
        429,
        "RATE_LIMIT_EXCEEDED",
        "Rate limit exceeded",
        resetTime=result.reset_time.isoformat(),
        remaining=result.remaining,
        limit=result.limit,
        tier=result.tier,
    )


@router.post("")
async def chat(body: ChatRequest, caller: CallerSession = Depends(get_caller)):
    """Submit a research task and stream its progress as SSE."""
    if body.valyuAccessToken:
        caller.provider_token = TokenProvider.from_access_token(body.valyuAccessToken)
    if not settings.is_self_hosted and caller.provider_token is None:
        return auth_required()

    limiter = RateLimiter()
    gate = await limiter.check(caller)
    if not gate.allowed:
        return rate_limited(gate)
    gate = await limiter.increment(caller)
    if not gate.allowed:
        return rate_limited(gate)

    last = body.messages[-1] if body.messages else None
    text = last.text() if last else ""
    if caller.user_id and body.sessionId and last and last.role == "user":
        try:
            await limiter.store.append_chat_message(body.sessionId, caller.user_id, "user", text)
        except Exception as e:
            log_service.log_event(
                event_type="db_error",
                message="Failed to save user message",
                error=str(e),
                session_id=body.sessionId,
            )

    location = body.location.to_location() if body.location else None
    query = build_research_query(text, location, body.customInstructions)

    orchestrator = TaskOrchestrator(caller)
    try:
        submitted = await orchestrator.submit_task(query, location or Location(name="Unknown"))
    except InsufficientCreditsError:
        await orchestrator.aclose()
        await limiter.release(caller)
        return error_response(
            402,
            "INSUFFICIENT_CREDITS",
            "Insufficient Valyu credits. Add credits at platform.valyu.ai",
            action="add_credits",
        )
    except Exception as e:
        await orchestrator.aclose()
        await limiter.release(caller)
        log_service.log_event(
            event_type="chat_error",
            message="Failed to create research task",
            error=str(e),
        )
        return error_response(500, "CHAT_ERROR", str(e) or "An unexpected error occurred")

    async def event_generator():
        async for event in orchestrator.stream_progress(submitted.task_id, session_id=body.sessionId):
            yield event.to_message()

    headers = {"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"}
    if settings.is_self_hosted:
        headers["X-Development-Mode"] = "true"
    response = EventSourceResponse(event_generator(), headers=headers)
    if caller.is_anonymous and limiter.metered:
        response.set_cookie(
            COOKIE_NAME,
            encode_anonymous_cookie(gate.used),
            max_age=COOKIE_MAX_AGE,
            path="/",
            samesite="lax",
            httponly=True,
        )
    return response


@router.get("/poll")
async def poll(request: Request, taskId: str | None = None):
    """One status check for a task whose stream handed over to client polling."""
    if not taskId:
        return JSONResponse({"error": "Missing taskId parameter"}, status_code=400)

    token = bearer_token(request)
    if token:
        client = DeepResearchClient(token_provider=TokenProvider.from_access_token(token))
    elif settings.is_self_hosted and settings.valyu_api_key:
        client = DeepResearchClient(api_key=settings.valyu_api_key)
    else:
        return JSONResponse({"error": "Authentication required"}, status_code=401)

    orchestrator = TaskOrchestrator(CallerSession(), client=client)
    try:
        payload = await orchestrator.poll_status(taskId)
    except ProviderError as e:
        return JSONResponse({"error": e.detail}, status_code=500)
    return JSONResponse(payload, headers={"Cache-Control": NO_CACHE})
