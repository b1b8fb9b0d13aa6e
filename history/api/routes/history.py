from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from history.api.deps import auth_required, get_caller
from history.models.identity import CallerSession
from history.models.schemas import HistoryResponse, TaskResponse
from history.services.ledger import UsageLedger

router = APIRouter(tags=["history"])


@router.get("/api/history")
async def list_history(limit: int = 50, caller: CallerSession = Depends(get_caller)):
    if caller.is_anonymous:
        return auth_required()
    tasks = await UsageLedger().list_for_user(caller.user_id, limit=min(max(limit, 1), 200))
    return HistoryResponse(tasks=[TaskResponse(**t.to_dict()) for t in tasks])


@router.delete("/api/history/{task_id}")
async def delete_history(task_id: str, caller: CallerSession = Depends(get_caller)):
    if caller.is_anonymous:
        return auth_required()
    if not await UsageLedger().delete(task_id, caller.user_id):
        raise HTTPException(status_code=404, detail="Task not found")
    return {"status": "deleted"}


@router.post("/api/history/{task_id}/share")
async def share_history(task_id: str, caller: CallerSession = Depends(get_caller)):
    if caller.is_anonymous:
        return auth_required()
    record = await UsageLedger().share(task_id, caller.user_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return {"shareToken": record.share_token, "task": TaskResponse(**record.to_dict())}


@router.delete("/api/history/{task_id}/share")
async def unshare_history(task_id: str, caller: CallerSession = Depends(get_caller)):
    if caller.is_anonymous:
        return auth_required()
    record = await UsageLedger().unshare(task_id, caller.user_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return {"status": "private"}


@router.get("/api/share/{token}")
async def get_shared(token: str):
    record = await UsageLedger().get_public(token)
    if record is None:
        raise HTTPException(status_code=404, detail="Shared research not found")
    return TaskResponse(**record.to_dict())
