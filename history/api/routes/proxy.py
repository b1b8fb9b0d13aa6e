from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from history.api.deps import bearer_token
from history.models.schemas import ProxyRequest
from history.services.oauth import TokenProvider
from history.tools.deepresearch import DeepResearchClient, InsufficientCreditsError, ProviderError

router = APIRouter(prefix="/api/valyu-proxy", tags=["proxy"])


@router.post("")
async def valyu_proxy(body: ProxyRequest, request: Request):
    """Forward a Valyu API call so it is billed to the signed-in organisation."""
    token = bearer_token(request)
    if not token:
        return JSONResponse({"error": "Missing or invalid authorization header"}, status_code=401)
    if not body.path:
        return JSONResponse({"error": "Missing path parameter"}, status_code=400)

    async with DeepResearchClient(token_provider=TokenProvider.from_access_token(token)) as client:
        try:
            return await client.proxy(body.path, body.method or "POST", body.body)
        except InsufficientCreditsError:
            return JSONResponse(
                {"error": "Insufficient credits", "code": "INSUFFICIENT_CREDITS"}, status_code=402
            )
        except ProviderError as e:
            return JSONResponse(
                {"error": e.detail or "Proxy request failed"}, status_code=e.status_code or 500
            )
