from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pgfleet.apps.api.deps import Principal, get_db, require_role
from pgfleet.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from pgfleet.apps.api.response import SuccessEnvelope, success_response
from pgfleet.services.audit import get_request_id
from pgfleet.services.failover import (
    FAILOVER_TYPE_PLANNED,
    cancel_failover,
    create_failover,
    execute_failover,
    failover_payload,
    get_failover,
    list_failovers,
    rollback_failover,
)


router = APIRouter(prefix="/failover", tags=["failover"], responses=DEFAULT_ERROR_RESPONSES)


class FailoverCreateRequest(BaseModel):
    cluster_id: str
    source_node_id: str
    target_node_id: str
    type: str = Field(default=FAILOVER_TYPE_PLANNED)
    reason: str | None = Field(default=None, max_length=2000)


class FailoverResponse(BaseModel):
    id: str
    cluster_id: str
    source_node_id: str
    target_node_id: str
    type: str
    status: str
    reason: str | None
    pre_checks: list[dict[str, Any]]
    steps: list[dict[str, Any]]
    initiated_by: str | None
    error_message: str | None
    last_completed_step: str | None
    created_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    rolled_back_at: datetime | None


class FailoverListResponse(BaseModel):
    items: list[FailoverResponse]


def _response(operation) -> FailoverResponse:
    return FailoverResponse(**failover_payload(operation))


@router.get("", response_model=SuccessEnvelope[FailoverListResponse])
async def failover_list(
    request: Request,
    cluster_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("viewer")),
) -> dict:
    operations = await list_failovers(db, cluster_id=cluster_id, limit=limit)
    return success_response(
        request=request,
        data=FailoverListResponse(items=[_response(operation) for operation in operations]),
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[FailoverResponse])
async def failover_create(
    payload: FailoverCreateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    # Pre-checks run here and are stored on the PENDING operation for review before execute.
    operation = await create_failover(
        db,
        cluster_id=payload.cluster_id,
        source_node_id=payload.source_node_id,
        target_node_id=payload.target_node_id,
        failover_type=payload.type,
        reason=payload.reason,
        initiated_by=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=_response(operation))


@router.get("/{operation_id}", response_model=SuccessEnvelope[FailoverResponse])
async def failover_get(
    operation_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("viewer")),
) -> dict:
    operation = await get_failover(db, operation_id)
    return success_response(request=request, data=_response(operation))


@router.post("/{operation_id}/execute", status_code=202, response_model=SuccessEnvelope[FailoverResponse])
async def failover_execute(
    operation_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    operation = await execute_failover(
        db,
        operation_id,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=_response(operation))


@router.post("/{operation_id}/rollback", response_model=SuccessEnvelope[FailoverResponse])
async def failover_rollback(
    operation_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    operation = await rollback_failover(
        db,
        operation_id,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=_response(operation))


@router.post("/{operation_id}/cancel", response_model=SuccessEnvelope[FailoverResponse])
async def failover_cancel(
    operation_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    operation = await cancel_failover(
        db,
        operation_id,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=_response(operation))
