from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ownerportal.apps.api.deps import Caller, get_current_user, get_db
from ownerportal.services.access_gate import evaluate_user_access


router = APIRouter(tags=["access"])


class AccessResponse(BaseModel):
    allowed: bool
    code: str | None = None
    message: str | None = None


@router.get("/access", response_model=AccessResponse, response_model_exclude_none=True)
async def get_access(
    caller: Caller = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Self-check used by clients before starting an AI feature.
    decision = await evaluate_user_access(db, caller.user_id)
    return decision.to_payload()
