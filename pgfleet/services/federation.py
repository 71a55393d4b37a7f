from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import secrets
from typing import Any

import httpx
from fastapi import HTTPException
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pgfleet.core.config import get_settings
from pgfleet.domain.models import ControlPlaneIdentity, FederatedNode, FederationRequest, SyncLog
from pgfleet.services.audit import record_event
from pgfleet.services.locks import FEDERATION_IDENTITY_SCOPE, advisory_lock
from pgfleet.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ROLE_PRINCIPLE = "PRINCIPLE"
ROLE_PARTNER = "PARTNER"
ROLE_STANDALONE = "STANDALONE"

NODE_STATUS_PENDING = "PENDING"
NODE_STATUS_CONNECTED = "CONNECTED"

REQUEST_PARTNERSHIP = "PARTNERSHIP"
REQUEST_PROMOTION = "PROMOTION"
REQUEST_TYPES = {REQUEST_PARTNERSHIP, REQUEST_PROMOTION}

REQUEST_PENDING = "PENDING"
REQUEST_ACKNOWLEDGED = "ACKNOWLEDGED"
REQUEST_REJECTED = "REJECTED"

RESPONDER_TIMEOUT = "timeout"
RESPONDER_SUPERSEDED = "superseded"

_IDENTITY_ROW_ID = 1


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _federation_error(code: str, message: str, status_code: int = 400) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _not_found_or_processed() -> HTTPException:
    return _federation_error("FEDERATION_REQUEST_NOT_FOUND", "Request not found or already processed", 404)


def generate_api_key() -> str:
    return f"cpf_{secrets.token_hex(32)}"


def generate_instance_id() -> str:
    return f"cp_{secrets.token_hex(16)}"


def mask_api_key(api_key: str | None) -> str | None:
    if not api_key:
        return None
    return api_key[:10] + "..."


def identity_payload(identity: ControlPlaneIdentity, *, mask: bool = True) -> dict[str, Any]:
    return {
        "instance_id": identity.instance_id,
        "name": identity.name,
        "domain": identity.domain,
        "role": identity.role,
        "principle_id": identity.principle_id,
        "api_key": mask_api_key(identity.api_key) if mask else identity.api_key,
        "epoch": identity.epoch,
        "created_at": identity.created_at,
        "updated_at": identity.updated_at,
    }


def federated_node_payload(node: FederatedNode) -> dict[str, Any]:
    return {
        "id": node.id,
        "instance_id": node.instance_id,
        "name": node.name,
        "domain": node.domain,
        "role": node.role,
        "status": node.status,
        "sync_enabled": node.sync_enabled,
        "last_heartbeat": node.last_heartbeat,
        "last_sync_at": node.last_sync_at,
        "promotion_request_at": node.promotion_request_at,
        "promotion_request_by": node.promotion_request_by,
        "created_at": node.created_at,
    }


def request_payload(request: FederationRequest) -> dict[str, Any]:
    return {
        "id": request.id,
        "from_instance_id": request.from_instance_id,
        "from_instance_name": request.from_instance_name,
        "from_instance_domain": request.from_instance_domain,
        "to_instance_id": request.to_instance_id,
        "request_type": request.request_type,
        "status": request.status,
        "message": request.message,
        "expires_at": request.expires_at,
        "node_id": request.node_id,
        "epoch": request.epoch,
        "responded_at": request.responded_at,
        "responded_by": request.responded_by,
        "created_at": request.created_at,
    }


def sync_log_payload(log: SyncLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "node_id": log.node_id,
        "direction": log.direction,
        "entity_type": log.entity_type,
        "status": log.status,
        "entity_count": log.entity_count,
        "error_message": log.error_message,
        "started_at": log.started_at,
        "completed_at": log.completed_at,
    }


def _default_domain(domain_hint: str | None) -> str:
    settings = get_settings()
    return settings.federation_public_domain or domain_hint or "http://localhost:8000"


def _set_role(identity: ControlPlaneIdentity, role: str, *, principle_id: str | None) -> bool:
    # Every role assignment gets a new epoch so stale promotions can be told apart.
    if identity.role == role and identity.principle_id == principle_id:
        return False
    identity.role = role
    identity.principle_id = principle_id
    identity.epoch = (identity.epoch or 0) + 1
    logger.info(
        "federation_role_changed instance_id=%s role=%s principle_id=%s epoch=%s",
        identity.instance_id,
        role,
        principle_id,
        identity.epoch,
    )
    return True


async def get_identity(session: AsyncSession) -> ControlPlaneIdentity | None:
    return await session.get(ControlPlaneIdentity, _IDENTITY_ROW_ID)


async def get_or_create_identity(session: AsyncSession, *, domain_hint: str | None = None) -> ControlPlaneIdentity:
    """Return this instance's identity, creating it as STANDALONE on first use.

    The identity lives in a fixed-id row, so two processes racing to create it
    collide on the primary key; the loser rolls back and reads the winner's row.
    """
    identity = await get_identity(session)
    if identity is not None:
        return identity
    settings = get_settings()
    identity = ControlPlaneIdentity(
        id=_IDENTITY_ROW_ID,
        instance_id=generate_instance_id(),
        name=settings.federation_default_name,
        domain=_default_domain(domain_hint),
        role=ROLE_STANDALONE,
        principle_id=None,
        api_key=generate_api_key(),
        epoch=1,
    )
    session.add(identity)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await get_identity(session)
        if existing is None:
            raise
        return existing
    logger.info("federation_identity_created instance_id=%s", identity.instance_id)
    return identity


async def _get_node(session: AsyncSession, node_id: str) -> FederatedNode:
    node = await session.get(FederatedNode, node_id)
    if node is None:
        raise _federation_error("FEDERATION_NODE_NOT_FOUND", "Node not found", 404)
    return node


async def _node_by_instance(session: AsyncSession, instance_id: str | None) -> FederatedNode | None:
    if not instance_id:
        return None
    stmt = select(FederatedNode).where(FederatedNode.instance_id == instance_id).limit(1)
    return (await session.execute(stmt)).scalar_one_or_none()


async def update_identity(
    session: AsyncSession,
    *,
    name: str,
    domain: str | None = None,
    actor_id: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
) -> ControlPlaneIdentity:
    if not name or not name.strip():
        raise _federation_error("FEDERATION_INVALID", "Name is required")
    identity = await get_or_create_identity(session, domain_hint=domain)
    before = {"name": identity.name, "domain": identity.domain}
    identity.name = name.strip()
    if domain:
        identity.domain = domain
    await session.commit()
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="control_plane_identity",
        entity_id=identity.instance_id,
        action="federation.identity_updated",
        before_state=before,
        after_state={"name": identity.name, "domain": identity.domain},
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return identity


async def regenerate_api_key(
    session: AsyncSession,
    *,
    actor_id: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
) -> str:
    identity = await get_or_create_identity(session)
    identity.api_key = generate_api_key()
    await session.commit()
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="control_plane_identity",
        entity_id=identity.instance_id,
        action="federation.api_key_regenerated",
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return identity.api_key


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=get_settings().federation_sync_timeout_s)


async def deliver_request(domain: str, payload: dict[str, Any]) -> bool:
    # Best-effort hand-off to the peer's inbound endpoint; the local record is authoritative.
    settings = get_settings()
    if not settings.federation_deliver_requests:
        return False
    url = f"{domain.rstrip('/')}/v1/federation/inbound-requests"
    try:
        async with _http_client() as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("federation_request_delivery_failed domain=%s", domain, exc_info=exc)
        increment_counter("federation_request_deliveries_total.failed")
        return False
    increment_counter("federation_request_deliveries_total.delivered")
    return True


def _outbound_payload(identity: ControlPlaneIdentity, request: FederationRequest) -> dict[str, Any]:
    return {
        "request_id": request.id,
        "from_instance_id": identity.instance_id,
        "from_instance_name": identity.name,
        "from_instance_domain": identity.domain,
        "to_instance_id": request.to_instance_id,
        "request_type": request.request_type,
        "message": request.message,
        "api_key": request.api_key,
        "expires_at": request.expires_at.isoformat() if request.expires_at else None,
        "epoch": request.epoch,
    }


async def send_partnership_request(
    session: AsyncSession,
    *,
    target_domain: str,
    message: str | None = None,
    actor_id: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
) -> tuple[FederationRequest, bool]:
    # Record the local half of the negotiation and a placeholder for the peer.
    if not target_domain or not target_domain.strip():
        raise _federation_error("FEDERATION_INVALID", "Target domain is required")
    target_domain = target_domain.strip()
    identity = await get_or_create_identity(session)
    request = FederationRequest(
        from_instance_id=identity.instance_id,
        from_instance_name=identity.name,
        from_instance_domain=identity.domain,
        to_instance_id=None,
        request_type=REQUEST_PARTNERSHIP,
        status=REQUEST_PENDING,
        message=message,
        api_key=identity.api_key,
        epoch=identity.epoch,
    )
    session.add(request)
    existing = (
        await session.execute(select(FederatedNode).where(FederatedNode.domain == target_domain).limit(1))
    ).scalar_one_or_none()
    if existing is None:
        session.add(
            FederatedNode(
                instance_id=f"pending_{secrets.token_hex(8)}",
                name="Pending Connection",
                domain=target_domain,
                role=ROLE_PRINCIPLE,
                status=NODE_STATUS_PENDING,
            )
        )
    await session.commit()
    delivered = await deliver_request(target_domain, _outbound_payload(identity, request))
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="federation_request",
        entity_id=request.id,
        action="federation.partnership_requested",
        after_state={"target_domain": target_domain, "message": message, "delivered": delivered},
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return request, delivered


async def receive_request(
    session: AsyncSession,
    *,
    from_instance_id: str,
    from_instance_name: str,
    from_instance_domain: str,
    request_type: str,
    message: str | None = None,
    api_key: str | None = None,
    expires_at: datetime | None = None,
    epoch: int | None = None,
) -> FederationRequest:
    # Inbound half of a negotiation delivered by a peer instance.
    request_type = request_type.upper()
    if request_type not in REQUEST_TYPES:
        raise _federation_error("FEDERATION_INVALID", f"Unsupported request type: {request_type}")
    identity = await get_or_create_identity(session)
    if from_instance_id == identity.instance_id:
        raise _federation_error("FEDERATION_INVALID", "Cannot receive a request from this instance")
    if request_type == REQUEST_PROMOTION and expires_at is None:
        expires_at = _utc_now() + timedelta(milliseconds=get_settings().federation_promotion_timeout_ms)
    request = FederationRequest(
        from_instance_id=from_instance_id,
        from_instance_name=from_instance_name,
        from_instance_domain=from_instance_domain,
        to_instance_id=identity.instance_id,
        request_type=request_type,
        status=REQUEST_PENDING,
        message=message,
        api_key=api_key,
        expires_at=expires_at if request_type == REQUEST_PROMOTION else None,
        epoch=epoch,
    )
    session.add(request)
    await session.commit()
    logger.info(
        "federation_request_received request_id=%s type=%s from=%s",
        request.id,
        request_type,
        from_instance_id,
    )
    return request


async def request_promotion(
    session: AsyncSession,
    *,
    node_id: str,
    actor_id: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
) -> tuple[FederationRequest, bool]:
    settings = get_settings()
    async with advisory_lock(FEDERATION_IDENTITY_SCOPE):
        identity = await get_or_create_identity(session)
        if identity.role != ROLE_PARTNER:
            raise _federation_error("FEDERATION_ROLE_INVALID", "Only partners can request promotion")
        node = await session.get(FederatedNode, node_id)
        if node is None or node.role != ROLE_PRINCIPLE:
            raise _federation_error("FEDERATION_INVALID_TARGET", "Invalid principle node")
        now = _utc_now()
        request = FederationRequest(
            node_id=node.id,
            from_instance_id=identity.instance_id,
            from_instance_name=identity.name,
            from_instance_domain=identity.domain,
            to_instance_id=node.instance_id,
            request_type=REQUEST_PROMOTION,
            status=REQUEST_PENDING,
            expires_at=now + timedelta(milliseconds=settings.federation_promotion_timeout_ms),
            api_key=identity.api_key,
            epoch=identity.epoch,
        )
        session.add(request)
        node.promotion_request_at = now
        node.promotion_request_by = identity.instance_id
        await session.commit()
    delivered = await deliver_request(node.domain, _outbound_payload(identity, request))
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="federation_request",
        entity_id=request.id,
        action="federation.promotion_requested",
        after_state={"node_id": node.id, "expires_at": request.expires_at, "epoch": request.epoch},
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return request, delivered


async def _claim_request(session: AsyncSession, request_id: str, *, status: str, responded_by: str | None) -> bool:
    # Conditional update so a request leaves PENDING exactly once, even across processes.
    result = await session.execute(
        update(FederationRequest)
        .where(FederationRequest.id == request_id, FederationRequest.status == REQUEST_PENDING)
        .values(status=status, responded_at=_utc_now(), responded_by=responded_by)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def resolve_expired_promotions(session: AsyncSession) -> list[str]:
    """Resolve this instance's own PROMOTION requests that timed out unanswered.

    A request whose epoch still matches the identity epoch promotes this
    instance to PRINCIPLE and demotes the targeted peer record to PARTNER. If
    the epoch moved on (an accept, a disconnect or another promotion happened
    since), the request is stale and is discarded as superseded. Returns the ids
    of requests that were ACKNOWLEDGED.
    """
    now = _utc_now()
    identity = await get_identity(session)
    if identity is None:
        return []
    expired = (
        await session.execute(
            select(FederationRequest.id).where(
                FederationRequest.request_type == REQUEST_PROMOTION,
                FederationRequest.status == REQUEST_PENDING,
                FederationRequest.expires_at < now,
                FederationRequest.from_instance_id == identity.instance_id,
            )
        )
    ).scalars().all()
    if not expired:
        return []

    acknowledged: list[str] = []
    async with advisory_lock(FEDERATION_IDENTITY_SCOPE):
        for request_id in expired:
            await session.refresh(identity)
            request = await session.get(FederationRequest, request_id)
            if request is None or request.status != REQUEST_PENDING:
                continue
            stale = request.epoch is not None and request.epoch != identity.epoch
            if stale or identity.role != ROLE_PARTNER:
                if await _claim_request(session, request_id, status=REQUEST_REJECTED, responded_by=RESPONDER_SUPERSEDED):
                    increment_counter("federation_promotions_total.superseded")
                    logger.info(
                        "federation_promotion_superseded request_id=%s request_epoch=%s identity_epoch=%s",
                        request_id,
                        request.epoch,
                        identity.epoch,
                    )
                await session.commit()
                continue
            if not await _claim_request(session, request_id, status=REQUEST_ACKNOWLEDGED, responded_by=RESPONDER_TIMEOUT):
                await session.rollback()
                continue
            _set_role(identity, ROLE_PRINCIPLE, principle_id=None)
            target = await _node_by_instance(session, request.to_instance_id)
            if target is not None:
                target.role = ROLE_PARTNER
                target.promotion_request_at = None
                target.promotion_request_by = None
            await session.commit()
            acknowledged.append(request_id)
            increment_counter("federation_promotions_total.timeout")
            logger.info("federation_promotion_timeout_applied request_id=%s epoch=%s", request_id, identity.epoch)
            await record_event(
                session=session,
                actor_id=RESPONDER_TIMEOUT,
                entity_type="federation_request",
                entity_id=request_id,
                action="federation.promotion_timeout",
                before_state={"role": ROLE_PARTNER},
                after_state={"role": identity.role, "epoch": identity.epoch},
                commit=True,
                best_effort=True,
            )
    return acknowledged


async def respond_to_request(
    session: AsyncSession,
    *,
    request_id: str,
    accept: bool,
    responded_by: str | None,
    actor_role: str | None = None,
    audit_request_id: str | None = None,
) -> dict[str, Any]:
    async with advisory_lock(FEDERATION_IDENTITY_SCOPE):
        request = await session.get(FederationRequest, request_id)
        if request is None or request.status != REQUEST_PENDING:
            raise _not_found_or_processed()
        if (
            request.request_type == REQUEST_PROMOTION
            and request.expires_at is not None
            and request.expires_at <= _utc_now()
        ):
            # The requester has already timed out and promoted itself; a late accept is discarded.
            raise _not_found_or_processed()
        identity = await get_or_create_identity(session)
        before = {"role": identity.role, "principle_id": identity.principle_id, "epoch": identity.epoch}

        if not accept:
            if not await _claim_request(session, request.id, status=REQUEST_REJECTED, responded_by=responded_by):
                raise _not_found_or_processed()
            await session.commit()
            action = "federation.request_rejected"
            result: dict[str, Any] = {"message": "Request rejected"}
        elif request.request_type == REQUEST_PARTNERSHIP:
            if not await _claim_request(session, request.id, status=REQUEST_ACKNOWLEDGED, responded_by=responded_by):
                raise _not_found_or_processed()
            _set_role(identity, ROLE_PRINCIPLE, principle_id=None)
            node = await _node_by_instance(session, request.from_instance_id)
            if node is None:
                node = FederatedNode(instance_id=request.from_instance_id)
                session.add(node)
            node.name = request.from_instance_name
            node.domain = request.from_instance_domain
            node.role = ROLE_PARTNER
            node.api_key = request.api_key
            node.status = NODE_STATUS_CONNECTED
            node.last_heartbeat = _utc_now()
            node.sync_enabled = True if node.sync_enabled is None else node.sync_enabled
            await session.commit()
            action = "federation.partnership_accepted"
            result = {
                "message": "Partnership accepted. You are now the Principle.",
                "node": federated_node_payload(node),
            }
        else:
            requester = await _node_by_instance(session, request.from_instance_id)
            if requester is None:
                raise _federation_error("FEDERATION_INVALID_TARGET", "Requesting instance is not a federated node")
            if not await _claim_request(session, request.id, status=REQUEST_ACKNOWLEDGED, responded_by=responded_by):
                raise _not_found_or_processed()
            _set_role(identity, ROLE_PARTNER, principle_id=request.from_instance_id)
            requester.role = ROLE_PRINCIPLE
            requester.promotion_request_at = None
            requester.promotion_request_by = None
            await session.commit()
            action = "federation.promotion_accepted"
            result = {
                "message": "Promotion accepted. You are now a Partner.",
                "node": federated_node_payload(requester),
            }

    await session.refresh(request)
    increment_counter(f"federation_responses_total.{'accepted' if accept else 'rejected'}")
    await record_event(
        session=session,
        actor_id=responded_by,
        actor_role=actor_role,
        entity_type="federation_request",
        entity_id=request.id,
        action=action,
        before_state=before,
        after_state={
            "role": identity.role,
            "principle_id": identity.principle_id,
            "epoch": identity.epoch,
            "from_instance_id": request.from_instance_id,
        },
        request_id=audit_request_id,
        commit=True,
        best_effort=True,
    )
    result["request"] = request_payload(request)
    result["identity"] = identity_payload(identity)
    return result


async def promote_partner(
    session: AsyncSession,
    *,
    node_id: str,
    actor_id: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    async with advisory_lock(FEDERATION_IDENTITY_SCOPE):
        identity = await get_or_create_identity(session)
        if identity.role != ROLE_PRINCIPLE:
            raise _federation_error("FEDERATION_ROLE_INVALID", "Only Principle can promote partners", 403)
        node = await session.get(FederatedNode, node_id)
        if node is None or node.role != ROLE_PARTNER:
            raise _federation_error("FEDERATION_INVALID_TARGET", "Invalid partner node")
        before = {"role": identity.role, "epoch": identity.epoch}
        _set_role(identity, ROLE_PARTNER, principle_id=node.instance_id)
        node.role = ROLE_PRINCIPLE
        await session.commit()
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="federated_node",
        entity_id=node.id,
        action="federation.partner_promoted",
        before_state=before,
        after_state={"role": identity.role, "epoch": identity.epoch, "new_principle": node.instance_id},
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return {
        "message": f"{node.name} has been promoted to Principle. You are now a Partner.",
        "node": federated_node_payload(node),
        "identity": identity_payload(identity),
    }


async def disconnect_node(
    session: AsyncSession,
    *,
    node_id: str,
    actor_id: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
) -> None:
    async with advisory_lock(FEDERATION_IDENTITY_SCOPE):
        node = await _get_node(session, node_id)
        before = federated_node_payload(node)
        instance_id = node.instance_id
        await session.execute(delete(SyncLog).where(SyncLog.node_id == node_id))
        await session.delete(node)
        identity = await get_identity(session)
        if identity is not None and identity.principle_id == instance_id:
            _set_role(identity, ROLE_STANDALONE, principle_id=None)
        await session.commit()
    logger.info("federation_node_disconnected node_id=%s instance_id=%s", node_id, instance_id)
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="federated_node",
        entity_id=node_id,
        action="federation.node_disconnected",
        before_state=before,
        request_id=request_id,
        commit=True,
        best_effort=True,
    )


async def toggle_sync(
    session: AsyncSession,
    *,
    node_id: str,
    enabled: bool,
    actor_id: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
) -> FederatedNode:
    node = await _get_node(session, node_id)
    node.sync_enabled = bool(enabled)
    await session.commit()
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="federated_node",
        entity_id=node.id,
        action="federation.sync_enabled" if enabled else "federation.sync_disabled",
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return node


async def delete_request(
    session: AsyncSession,
    *,
    request_id: str,
    actor_id: str | None = None,
    actor_role: str | None = None,
    audit_request_id: str | None = None,
) -> None:
    request = await session.get(FederationRequest, request_id)
    if request is None:
        raise _federation_error("FEDERATION_REQUEST_NOT_FOUND", "Request not found", 404)
    before = request_payload(request)
    await session.delete(request)
    await session.commit()
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="federation_request",
        entity_id=request_id,
        action="federation.request_deleted",
        before_state=before,
        request_id=audit_request_id,
        commit=True,
        best_effort=True,
    )


async def list_pending_requests(session: AsyncSession) -> list[FederationRequest]:
    # Incoming only: addressed to us, or unaddressed partnership requests from someone else.
    identity = await get_or_create_identity(session)
    now = _utc_now()
    stmt = (
        select(FederationRequest)
        .where(
            FederationRequest.status == REQUEST_PENDING,
            FederationRequest.from_instance_id != identity.instance_id,
            or_(
                FederationRequest.to_instance_id == identity.instance_id,
                FederationRequest.to_instance_id.is_(None),
            ),
            or_(FederationRequest.expires_at.is_(None), FederationRequest.expires_at > now),
        )
        .order_by(FederationRequest.created_at.desc())
    )
    return list((await session.execute(stmt)).scalars())


async def get_federation_status(
    session: AsyncSession,
    *,
    domain_hint: str | None = None,
) -> dict[str, Any]:
    identity = await get_or_create_identity(session, domain_hint=domain_hint)
    # Timeouts are polled; every status read resolves what has expired.
    await resolve_expired_promotions(session)
    await session.refresh(identity)

    nodes = list(
        (await session.execute(select(FederatedNode).order_by(FederatedNode.created_at.desc()))).scalars()
    )
    node_payloads = []
    for node in nodes:
        logs = (
            await session.execute(
                select(SyncLog).where(SyncLog.node_id == node.id).order_by(SyncLog.started_at.desc()).limit(5)
            )
        ).scalars()
        node_payloads.append({**federated_node_payload(node), "sync_logs": [sync_log_payload(log) for log in logs]})
    requests = (
        await session.execute(select(FederationRequest).order_by(FederationRequest.created_at.desc()).limit(50))
    ).scalars()
    stats_rows = await session.execute(select(SyncLog.status, func.count()).group_by(SyncLog.status))
    return {
        "identity": identity_payload(identity),
        "federated_nodes": node_payloads,
        "requests": [request_payload(request) for request in requests],
        "sync_stats": {status: int(count) for status, count in stats_rows},
        "current_domain": _default_domain(domain_hint),
    }
