from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from pgfleet.apps.api.deps import Principal, get_db, get_federation_peer, require_role
from pgfleet.apps.api.openapi import DEFAULT_ERROR_RESPONSES, FEDERATION_PEER_RESPONSES
from pgfleet.apps.api.response import SuccessEnvelope, success_response
from pgfleet.services.audit import get_request_id
from pgfleet.services.federation import sync_log_payload
from pgfleet.services.federation_sync import (
    PeerContext,
    get_full_sync_data,
    heartbeat,
    list_sync_logs,
    receive_sync,
    trigger_sync,
)


router = APIRouter(
    prefix="/federation/sync",
    tags=["federation-sync"],
    responses={**DEFAULT_ERROR_RESPONSES, **FEDERATION_PEER_RESPONSES},
)


class TriggerSyncRequest(BaseModel):
    node_id: str | None = None


@router.get("", response_model=SuccessEnvelope[dict[str, Any]])
async def federation_sync_get(
    request: Request,
    action: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    peer: PeerContext = Depends(get_federation_peer),
) -> dict:
    if action == "full-sync":
        payload = await get_full_sync_data(db)
    elif action in (None, "heartbeat"):
        payload = await heartbeat(db, peer)
    else:
        raise HTTPException(
            status_code=400,
            detail={"code": "BAD_REQUEST", "message": f"Unsupported sync action: {action}"},
        )
    return success_response(request=request, data=payload)


@router.get("/logs/{node_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def federation_sync_logs(
    node_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("viewer")),
) -> dict:
    logs = await list_sync_logs(db, node_id=node_id)
    return success_response(request=request, data={"items": [sync_log_payload(log) for log in logs]})


@router.post("/receive", response_model=SuccessEnvelope[dict[str, Any]])
async def federation_sync_receive(
    request: Request,
    payload: dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db),
    peer: PeerContext = Depends(get_federation_peer),
) -> dict:
    result = await receive_sync(db, peer, payload)
    return success_response(request=request, data=result)


@router.post("/heartbeat", response_model=SuccessEnvelope[dict[str, Any]])
async def federation_sync_heartbeat(
    request: Request,
    db: AsyncSession = Depends(get_db),
    peer: PeerContext = Depends(get_federation_peer),
) -> dict:
    payload = await heartbeat(db, peer)
    return success_response(request=request, data=payload)


@router.post("/trigger", response_model=SuccessEnvelope[dict[str, Any]])
async def federation_sync_trigger(
    request: Request,
    payload: TriggerSyncRequest | None = None,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    result = await trigger_sync(
        db,
        node_id=payload.node_id if payload else None,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=result)
