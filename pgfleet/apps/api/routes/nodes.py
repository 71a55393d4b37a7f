from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pgfleet.apps.api.deps import Principal, get_db, require_role
from pgfleet.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from pgfleet.apps.api.response import SuccessEnvelope, success_response
from pgfleet.services.audit import get_request_id, record_event
from pgfleet.services.nodes import (
    STATUS_ONLINE,
    delete_node,
    lifecycle_event_payload,
    list_lifecycle_events,
    list_nodes,
    node_payload,
    register_node,
    require_node,
)


router = APIRouter(prefix="/nodes", tags=["nodes"], responses=DEFAULT_ERROR_RESPONSES)


class NodeCreateRequest(BaseModel):
    cluster_id: str
    name: str = Field(min_length=1, max_length=200)
    role: str
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    status: str = STATUS_ONLINE
    # Passwords in the connection string are discarded; the managed credential is used instead.
    connection_string: str | None = None
    replication_slot: str | None = None
    ssl: bool | None = None


class NodeResponse(BaseModel):
    id: str
    cluster_id: str
    name: str
    host: str
    port: int
    role: str
    status: str
    connection_string: str | None
    replication_slot: str | None
    ssl: bool
    created_at: datetime | None
    updated_at: datetime | None


class NodeListResponse(BaseModel):
    items: list[NodeResponse]


class LifecycleEventResponse(BaseModel):
    id: str
    node_id: str
    cluster_id: str
    event_type: str
    from_status: str | None
    to_status: str | None
    details: dict[str, Any]
    created_at: datetime | None


class LifecycleEventListResponse(BaseModel):
    items: list[LifecycleEventResponse]


@router.get("", response_model=SuccessEnvelope[NodeListResponse])
async def nodes_list(
    request: Request,
    cluster_id: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("viewer")),
) -> dict:
    nodes = await list_nodes(db, cluster_id=cluster_id)
    return success_response(
        request=request,
        data=NodeListResponse(items=[NodeResponse(**node_payload(node)) for node in nodes]),
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[NodeResponse])
async def nodes_create(
    payload: NodeCreateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    node = await register_node(
        db,
        cluster_id=payload.cluster_id,
        name=payload.name,
        host=payload.host,
        port=payload.port,
        role=payload.role,
        status=payload.status,
        connection_string=payload.connection_string,
        replication_slot=payload.replication_slot,
        ssl=payload.ssl,
    )
    await record_event(
        session=db,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        entity_type="node",
        entity_id=node.id,
        action="node.registered",
        after_state={"cluster_id": node.cluster_id, "role": node.role, "host": node.host, "port": node.port},
        request_id=get_request_id(request),
        commit=True,
        best_effort=True,
    )
    return success_response(request=request, data=NodeResponse(**node_payload(node)))


# Declared before /{node_id} so the literal path wins.
@router.get("/lifecycle-events", response_model=SuccessEnvelope[LifecycleEventListResponse])
async def nodes_lifecycle_events(
    request: Request,
    node_id: str | None = Query(default=None),
    cluster_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("viewer")),
) -> dict:
    events = await list_lifecycle_events(db, node_id=node_id, cluster_id=cluster_id, limit=limit)
    items = [LifecycleEventResponse(**lifecycle_event_payload(event)) for event in events]
    return success_response(request=request, data=LifecycleEventListResponse(items=items))


@router.get("/{node_id}", response_model=SuccessEnvelope[NodeResponse])
async def nodes_get(
    node_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("viewer")),
) -> dict:
    node = await require_node(db, node_id)
    return success_response(request=request, data=NodeResponse(**node_payload(node)))


@router.delete("/{node_id}", status_code=204)
async def nodes_delete(
    node_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> None:
    node = await require_node(db, node_id)
    before = {"cluster_id": node.cluster_id, "role": node.role, "host": node.host}
    await delete_node(db, node_id)
    await record_event(
        session=db,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        entity_type="node",
        entity_id=node_id,
        action="node.deleted",
        before_state=before,
        request_id=get_request_id(request),
        commit=True,
        best_effort=True,
    )
    return None
