from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from pgfleet.apps.api.deps import Principal, get_db, require_mfa, require_rotation_caller
from pgfleet.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from pgfleet.apps.api.response import SuccessEnvelope, success_response
from pgfleet.services.audit import get_request_id
from pgfleet.services.credentials import (
    alert_payload,
    auto_rotate,
    check_rotation,
    credential_payload,
    get_credential_status,
    initialize_credential,
    propagate_all,
    propagate_to_node,
    resolve_credential_alert,
    rotate_credential,
)


router = APIRouter(prefix="/credentials", tags=["credentials"], responses=DEFAULT_ERROR_RESPONSES)


class CredentialResponse(BaseModel):
    id: str
    username: str
    status: str
    rotation_interval_days: int
    last_rotated_at: datetime
    next_rotation_at: datetime
    password_history_count: int
    password_age_days: int


class PropagationResponse(BaseModel):
    node_id: str
    node_name: str
    status: str
    password_used: str | None
    error_message: str | None


class PropagateAllResponse(BaseModel):
    summary: dict[str, int]
    status: str
    results: list[PropagationResponse]


class AlertResponse(BaseModel):
    id: str
    node_id: str
    cluster_id: str
    alert_type: str
    message: str
    resolved: bool
    resolved_at: datetime | None
    resolved_by: str | None
    created_at: datetime | None


@router.get("", response_model=SuccessEnvelope[dict[str, Any]])
async def credentials_status(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_mfa),
) -> dict:
    # Password material is never part of the payload.
    payload = await get_credential_status(db)
    return success_response(request=request, data=payload)


@router.post("/initialize", status_code=201, response_model=SuccessEnvelope[CredentialResponse])
async def credentials_initialize(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_mfa),
) -> dict:
    credential = await initialize_credential(
        db,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=CredentialResponse(**credential_payload(credential)))


@router.post("/rotate", response_model=SuccessEnvelope[CredentialResponse])
async def credentials_rotate(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_mfa),
) -> dict:
    credential = await rotate_credential(
        db,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=CredentialResponse(**credential_payload(credential)))


@router.post("/propagate-all", response_model=SuccessEnvelope[PropagateAllResponse])
async def credentials_propagate_all(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_mfa),
) -> dict:
    result = await propagate_all(
        db,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=PropagateAllResponse(**result))


@router.post("/propagate/{node_id}", response_model=SuccessEnvelope[PropagationResponse])
async def credentials_propagate_node(
    node_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_mfa),
) -> dict:
    result = await propagate_to_node(
        db,
        node_id,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(
        request=request,
        data=PropagationResponse(
            node_id=result.node_id,
            node_name=result.node_name,
            status=result.status,
            password_used=result.password_used,
            error_message=result.error_message,
        ),
    )


@router.post("/alerts/{alert_id}/resolve", response_model=SuccessEnvelope[AlertResponse])
async def credentials_resolve_alert(
    alert_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_mfa),
) -> dict:
    alert = await resolve_credential_alert(
        db,
        alert_id,
        resolved_by=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=AlertResponse(**alert_payload(alert)))


@router.get("/rotation-check", response_model=SuccessEnvelope[dict[str, Any]])
async def credentials_rotation_check(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_rotation_caller),
) -> dict:
    payload = await check_rotation(db)
    return success_response(request=request, data=payload)


@router.post("/rotation-check", response_model=SuccessEnvelope[dict[str, Any]])
async def credentials_auto_rotate(
    request: Request,
    force: bool = Query(default=False),
    propagate: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_rotation_caller),
) -> dict:
    # Scheduler entry point: rotate when due (or forced) and optionally push to every node.
    request_id = get_request_id(request)
    result = await auto_rotate(db, force=force, actor_id=principal.actor_id, request_id=request_id)
    if result.get("rotated") and propagate:
        result["propagation"] = await propagate_all(
            db,
            actor_id=principal.actor_id,
            actor_role=principal.role,
            request_id=request_id,
        )
    return success_response(request=request, data=result)
