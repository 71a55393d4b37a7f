from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pgfleet.apps.api.deps import Principal, get_db, require_role
from pgfleet.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from pgfleet.apps.api.response import SuccessEnvelope, success_response
from pgfleet.core.config import get_settings
from pgfleet.services.audit import get_request_id
from pgfleet.services.federation import (
    delete_request,
    disconnect_node,
    federated_node_payload,
    get_federation_status,
    identity_payload,
    list_pending_requests,
    promote_partner,
    receive_request,
    regenerate_api_key,
    request_payload,
    request_promotion,
    respond_to_request,
    send_partnership_request,
    toggle_sync,
    update_identity,
)


router = APIRouter(prefix="/federation", tags=["federation"], responses=DEFAULT_ERROR_RESPONSES)


class IdentityUpdateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    domain: str | None = None


class PartnershipRequestCreate(BaseModel):
    target_domain: str
    message: str | None = Field(default=None, max_length=2000)


class RespondRequest(BaseModel):
    accept: bool


class ToggleSyncRequest(BaseModel):
    enabled: bool


class InboundRequest(BaseModel):
    from_instance_id: str
    from_instance_name: str
    from_instance_domain: str
    request_type: str
    message: str | None = None
    api_key: str | None = None
    expires_at: datetime | None = None
    epoch: int | None = None


class FederationRequestResponse(BaseModel):
    id: str
    from_instance_id: str
    from_instance_name: str
    from_instance_domain: str
    to_instance_id: str | None
    request_type: str
    status: str
    message: str | None
    expires_at: datetime | None
    node_id: str | None
    epoch: int | None
    responded_at: datetime | None
    responded_by: str | None
    created_at: datetime | None


class FederationRequestListResponse(BaseModel):
    items: list[FederationRequestResponse]


class SentRequestResponse(BaseModel):
    request: FederationRequestResponse
    delivered: bool
    message: str | None = None


def _domain_from_request(request: Request) -> str:
    # Derive this instance's public address from proxy headers when none is configured.
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or "localhost:8000"
    proto = request.headers.get("x-forwarded-proto") or "https"
    return f"{proto}://{host}"


@router.get("", response_model=SuccessEnvelope[dict[str, Any]])
async def federation_status(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("viewer")),
) -> dict:
    payload = await get_federation_status(db, domain_hint=_domain_from_request(request))
    return success_response(request=request, data=payload)


@router.get("/requests/pending", response_model=SuccessEnvelope[FederationRequestListResponse])
async def federation_pending_requests(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("viewer")),
) -> dict:
    requests = await list_pending_requests(db)
    items = [FederationRequestResponse(**request_payload(item)) for item in requests]
    return success_response(request=request, data=FederationRequestListResponse(items=items))


@router.post("/identity", response_model=SuccessEnvelope[dict[str, Any]])
async def federation_update_identity(
    payload: IdentityUpdateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    identity = await update_identity(
        db,
        name=payload.name,
        domain=payload.domain,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=identity_payload(identity))


@router.post("/identity/regenerate-api-key", response_model=SuccessEnvelope[dict[str, str]])
async def federation_regenerate_api_key(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    # The full key is only ever returned here; every other read masks it.
    api_key = await regenerate_api_key(
        db,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data={"api_key": api_key})


@router.post("/partnership-requests", status_code=201, response_model=SuccessEnvelope[SentRequestResponse])
async def federation_send_partnership_request(
    payload: PartnershipRequestCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    sent, delivered = await send_partnership_request(
        db,
        target_domain=payload.target_domain,
        message=payload.message,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(
        request=request,
        data=SentRequestResponse(request=FederationRequestResponse(**request_payload(sent)), delivered=delivered),
    )


@router.post("/inbound-requests", status_code=201, response_model=SuccessEnvelope[FederationRequestResponse])
async def federation_inbound_request(
    payload: InboundRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Peers deliver partnership and promotion requests here; nothing changes until an operator responds.
    received = await receive_request(
        db,
        from_instance_id=payload.from_instance_id,
        from_instance_name=payload.from_instance_name,
        from_instance_domain=payload.from_instance_domain,
        request_type=payload.request_type,
        message=payload.message,
        api_key=payload.api_key,
        expires_at=payload.expires_at,
        epoch=payload.epoch,
    )
    return success_response(request=request, data=FederationRequestResponse(**request_payload(received)))


@router.post("/requests/{request_id}/respond", response_model=SuccessEnvelope[dict[str, Any]])
async def federation_respond(
    request_id: str,
    payload: RespondRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    result = await respond_to_request(
        db,
        request_id=request_id,
        accept=payload.accept,
        responded_by=principal.actor_id,
        actor_role=principal.role,
        audit_request_id=get_request_id(request),
    )
    return success_response(request=request, data=result)


@router.delete("/requests/{request_id}", status_code=204)
async def federation_delete_request(
    request_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> None:
    await delete_request(
        db,
        request_id=request_id,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        audit_request_id=get_request_id(request),
    )
    return None


@router.post("/nodes/{node_id}/request-promotion", status_code=201, response_model=SuccessEnvelope[SentRequestResponse])
async def federation_request_promotion(
    node_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    sent, delivered = await request_promotion(
        db,
        node_id=node_id,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(
        request=request,
        data=SentRequestResponse(
            request=FederationRequestResponse(**request_payload(sent)),
            delivered=delivered,
            message=(
                "Promotion request sent. You will be promoted automatically if no response in "
                f"{get_settings().federation_promotion_timeout_ms // 1000} seconds."
            ),
        ),
    )


@router.post("/nodes/{node_id}/promote", response_model=SuccessEnvelope[dict[str, Any]])
async def federation_promote_partner(
    node_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    result = await promote_partner(
        db,
        node_id=node_id,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=result)


@router.post("/nodes/{node_id}/sync", response_model=SuccessEnvelope[dict[str, Any]])
async def federation_toggle_sync(
    node_id: str,
    payload: ToggleSyncRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    node = await toggle_sync(
        db,
        node_id=node_id,
        enabled=payload.enabled,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=federated_node_payload(node))


@router.delete("/nodes/{node_id}", status_code=204)
async def federation_disconnect_node(
    node_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> None:
    await disconnect_node(
        db,
        node_id=node_id,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        request_id=get_request_id(request),
    )
    return None
