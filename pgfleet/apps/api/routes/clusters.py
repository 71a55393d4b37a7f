from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pgfleet.apps.api.deps import Principal, get_db, require_role
from pgfleet.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from pgfleet.apps.api.response import SuccessEnvelope, success_response
from pgfleet.services.audit import get_request_id, record_event
from pgfleet.services.nodes import cluster_payload, get_cluster, list_clusters, register_cluster


router = APIRouter(prefix="/clusters", tags=["clusters"], responses=DEFAULT_ERROR_RESPONSES)


class ClusterCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None


class ClusterResponse(BaseModel):
    id: str
    name: str
    description: str | None
    created_at: datetime | None


class ClusterListResponse(BaseModel):
    items: list[ClusterResponse]


@router.get("", response_model=SuccessEnvelope[ClusterListResponse])
async def clusters_list(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("viewer")),
) -> dict:
    clusters = await list_clusters(db)
    items = [ClusterResponse(**cluster_payload(cluster)) for cluster in clusters]
    return success_response(request=request, data=ClusterListResponse(items=items))


@router.post("", status_code=201, response_model=SuccessEnvelope[ClusterResponse])
async def clusters_create(
    payload: ClusterCreateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    cluster = await register_cluster(db, name=payload.name, description=payload.description)
    await record_event(
        session=db,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        entity_type="cluster",
        entity_id=cluster.id,
        action="cluster.registered",
        after_state={"name": cluster.name},
        request_id=get_request_id(request),
        commit=True,
        best_effort=True,
    )
    return success_response(request=request, data=ClusterResponse(**cluster_payload(cluster)))


@router.get("/{cluster_id}", response_model=SuccessEnvelope[ClusterResponse])
async def clusters_get(
    cluster_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("viewer")),
) -> dict:
    cluster = await get_cluster(db, cluster_id)
    return success_response(request=request, data=ClusterResponse(**cluster_payload(cluster)))
