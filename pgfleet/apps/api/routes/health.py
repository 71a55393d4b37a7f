from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pgfleet.apps.api.deps import get_db
from pgfleet.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from pgfleet.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


# Liveness and readiness probes are unauthenticated; operator detail lives under /ops/health.
@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok"))


@router.get("/ready", response_model=SuccessEnvelope[HealthResponse])
async def ready(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=503,
            detail={"code": "DB_UNAVAILABLE", "message": "Control-plane database is unreachable"},
        ) from exc
    return success_response(request=request, data=HealthResponse(status="ready"))
