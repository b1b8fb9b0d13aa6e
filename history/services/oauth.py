"""Valyu OAuth 2.1 (authorization code + PKCE) helpers.

The client secret never leaves the server: browsers send the authorization
code and their PKCE verifier to ``/api/auth/valyu/token`` and this module
performs the exchange against Valyu's token endpoint.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from history.config import settings
from history.models.identity import FederatedUser
from history.services.logger import logger

REFRESH_MARGIN_SECONDS = 5 * 60


class OAuthError(Exception):
    """OAuth failure carrying a standard error code and HTTP status."""

    def __init__(self, code: str, message: str, status_code: int = 400):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


@dataclass
class OAuthTokens:
    access_token: str
    refresh_token: str | None = None
    expires_at: float = 0.0  # unix seconds
    id_token: str | None = None
    token_type: str = "bearer"

    @classmethod
    def from_response(cls, data: dict[str, Any], *, now: float | None = None) -> OAuthTokens:
        issued = time.time() if now is None else now
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=issued + int(data.get("expires_in") or 3600),
            id_token=data.get("id_token"),
            token_type=data.get("token_type") or "bearer",
        )

    def expires_in(self, *, now: float | None = None) -> int:
        current = time.time() if now is None else now
        return max(int(self.expires_at - current), 0)

    def to_response(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "id_token": self.id_token,
            "expires_in": self.expires_in(),
            "token_type": self.token_type,
        }


# --- PKCE ---


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    return _b64url(secrets.token_bytes(32))


def generate_code_challenge(verifier: str) -> str:
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    return _b64url(secrets.token_bytes(16))


def _oauth_base() -> str:
    return settings.valyu_supabase_url.rstrip("/")


def authorization_endpoint() -> str:
    return f"{_oauth_base()}/auth/v1/oauth/authorize"


def token_endpoint() -> str:
    return f"{_oauth_base()}/auth/v1/oauth/token"


def build_authorization_url(redirect_uri: str, app_source: str | None = None) -> dict[str, str]:
    """Return the authorization URL plus the state and verifier the client must keep."""
    state = generate_state()
    verifier = generate_code_verifier()
    params = {
        "client_id": settings.valyu_client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "state": state,
        "code_challenge": generate_code_challenge(verifier),
        "code_challenge_method": "S256",
        "scope": "openid email profile",
        "access_type": "offline",
        "prompt": "consent",
    }
    if app_source:
        params["utm_source"] = app_source
    return {
        "url": f"{authorization_endpoint()}?{urlencode(params)}",
        "state": state,
        "verifier": verifier,
    }


def allowed_redirect_uris() -> list[str]:
    uris = [
        f"{settings.app_url.rstrip('/')}/auth/valyu/callback",
        "http://localhost:3000/auth/valyu/callback",
        "http://localhost:3001/auth/valyu/callback",
    ]
    uris.extend(u.strip() for u in settings.oauth_extra_redirect_uris.split(",") if u.strip())
    return uris


def callback_redirect(
    code: str | None,
    state: str | None,
    error: str | None = None,
    error_description: str | None = None,
) -> str:
    """Where the OAuth callback route sends the browser next."""
    app_url = settings.app_url.rstrip("/")
    if error:
        logger.warning(f"Valyu OAuth callback error: {error} {error_description or ''}".strip())
        return f"{app_url}/?{urlencode({'auth_error': error_description or error})}"
    if not code:
        return f"{app_url}/?{urlencode({'auth_error': 'No authorization code received'})}"
    params = {"code": code}
    if state:
        params["state"] = state
    return f"{app_url}/auth/valyu/complete?{urlencode(params)}"


# --- Token endpoint ---


def _require_client_config() -> tuple[str, str]:
    if not settings.valyu_supabase_url or not settings.valyu_client_id or not settings.valyu_client_secret:
        logger.error("Valyu OAuth token exchange requested but OAuth is not configured")
        raise OAuthError("server_error", "OAuth not configured", status_code=500)
    return settings.valyu_client_id, settings.valyu_client_secret


async def _token_request(params: dict[str, str], http_client: httpx.AsyncClient | None) -> OAuthTokens:
    client_id, client_secret = _require_client_config()

    async def _post(client: httpx.AsyncClient) -> httpx.Response:
        return await client.post(
            token_endpoint(),
            data=params,
            auth=(client_id, client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    try:
        if http_client is None:
            async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as client:
                response = await _post(client)
        else:
            response = await _post(http_client)
    except httpx.HTTPError as e:
        logger.error(f"Valyu token endpoint unreachable: {e}")
        raise OAuthError("server_error", "Internal server error", status_code=500) from e

    if response.status_code >= 400:
        logger.error(f"Valyu token exchange failed: {response.status_code} {response.text[:200]}")
        code = "invalid_grant" if response.status_code in (400, 401) else "token_exchange_failed"
        raise OAuthError(code, "Failed to exchange code for tokens", status_code=response.status_code)

    return OAuthTokens.from_response(response.json())


async def exchange_code(
    code: str,
    code_verifier: str,
    redirect_uri: str | None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> OAuthTokens:
    if not code or not code_verifier:
        raise OAuthError("invalid_request", "Missing required parameters")
    if redirect_uri and redirect_uri not in allowed_redirect_uris():
        logger.warning(f"Rejected token exchange for redirect_uri={redirect_uri!r}")
        raise OAuthError("invalid_request", "Invalid redirect_uri")
    return await _token_request(
        {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": code_verifier,
            "redirect_uri": redirect_uri or "",
        },
        http_client,
    )


async def refresh(refresh_token: str, *, http_client: httpx.AsyncClient | None = None) -> OAuthTokens:
    if not refresh_token:
        raise OAuthError("invalid_request", "Missing required parameters")
    tokens = await _token_request(
        {"grant_type": "refresh_token", "refresh_token": refresh_token},
        http_client,
    )
    if not tokens.refresh_token:
        tokens.refresh_token = refresh_token
    return tokens


class TokenProvider:
    """Hands out a Valyu access token, refreshing it shortly before expiry."""

    def __init__(self, tokens: OAuthTokens, *, http_client: httpx.AsyncClient | None = None):
        self.tokens = tokens
        self._http_client = http_client

    @classmethod
    def from_access_token(cls, access_token: str) -> TokenProvider:
        # Bearer tokens handed to us per request carry no expiry or refresh token.
        return cls(OAuthTokens(access_token=access_token, expires_at=float("inf")))

    def needs_refresh(self, *, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.tokens.expires_at - REFRESH_MARGIN_SECONDS

    async def get_access_token(self) -> str:
        if self.needs_refresh() and self.tokens.refresh_token:
            try:
                self.tokens = await refresh(self.tokens.refresh_token, http_client=self._http_client)
            except OAuthError as e:
                # The current token may still be accepted; the provider decides.
                logger.warning(f"Valyu token refresh failed ({e.code}); using current token")
        return self.tokens.access_token


async def fetch_user_info(access_token: str, *, http_client: httpx.AsyncClient | None = None) -> FederatedUser:
    url = f"{settings.valyu_app_url.rstrip('/')}/api/oauth/userinfo"
    headers = {"Authorization": f"Bearer {access_token}"}
    try:
        if http_client is None:
            async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as client:
                response = await client.get(url, headers=headers)
        else:
            response = await http_client.get(url, headers=headers)
    except httpx.HTTPError as e:
        raise OAuthError("userinfo_failed", "Failed to fetch user info from Valyu", status_code=401) from e

    if response.status_code >= 400:
        logger.error(f"Valyu userinfo failed: {response.status_code} {response.text[:200]}")
        raise OAuthError("userinfo_failed", "Failed to fetch user info from Valyu", status_code=401)
    return FederatedUser.from_userinfo(response.json())
