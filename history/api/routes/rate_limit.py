from __future__ import annotations

from fastapi import APIRouter, Depends

from history.api.deps import get_caller
from history.models.identity import CallerSession
from history.services.rate_limit import RateLimiter

router = APIRouter(prefix="/api/rate-limit", tags=["rate-limit"])


@router.get("")
async def get_rate_limit(caller: CallerSession = Depends(get_caller)):
    result = await RateLimiter().check(caller)
    return result.to_dict()
