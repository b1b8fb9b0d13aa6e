from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, RedirectResponse

from history.api.deps import get_caller
from history.models.identity import CallerSession
from history.models.schemas import SessionRequest, TokenRequest
from history.services import oauth
from history.services.logger import logger
from history.services.rate_limit import COOKIE_NAME, RateLimiter
from history.services.session_bridge import establish_local_session

router = APIRouter(tags=["auth"])


def _oauth_error(e: oauth.OAuthError) -> JSONResponse:
    return JSONResponse(e.to_dict(), status_code=e.status_code)


@router.post("/api/auth/valyu/token")
async def token(body: TokenRequest):
    """Exchange an authorization code (or refresh token) server-side."""
    try:
        if body.grant_type == "refresh_token" and body.refresh_token:
            tokens = await oauth.refresh(body.refresh_token)
        elif body.code and body.code_verifier:
            tokens = await oauth.exchange_code(body.code, body.code_verifier, body.redirect_uri)
        else:
            raise oauth.OAuthError("invalid_request", "Missing required parameters")
    except oauth.OAuthError as e:
        return _oauth_error(e)
    return tokens.to_response()


@router.post("/api/auth/valyu/session")
async def session(body: SessionRequest, caller: CallerSession = Depends(get_caller)):
    """Turn a Valyu access token into a local sign-in."""
    try:
        local = await establish_local_session(body.valyu_access_token or body.access_token or "")
    except oauth.OAuthError as e:
        return JSONResponse(
            {"error": e.code, "error_description": e.message}, status_code=e.status_code
        )

    response = JSONResponse(local.to_response())
    if caller.anonymous_used > 0:
        try:
            await RateLimiter().transfer_anonymous_usage(local.user_id, caller.anonymous_used)
        except Exception as e:
            logger.error(f"Failed to transfer anonymous usage for {local.user_id}: {e}")
        else:
            response.delete_cookie(COOKIE_NAME, path="/")
    return response


@router.get("/api/auth/valyu/authorize")
async def authorize(redirect_uri: str | None = None, app_source: str | None = None):
    redirect = redirect_uri or oauth.allowed_redirect_uris()[0]
    if redirect not in oauth.allowed_redirect_uris():
        return _oauth_error(oauth.OAuthError("invalid_request", "Invalid redirect_uri"))
    return oauth.build_authorization_url(redirect, app_source)


@router.get("/auth/valyu/callback")
async def callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
):
    return RedirectResponse(oauth.callback_redirect(code, state, error, error_description), status_code=307)
