from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hmac
import logging
from typing import Any

import httpx
from fastapi import HTTPException
from fastapi.encoders import jsonable_encoder
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pgfleet.core.config import get_settings
from pgfleet.core.errors import FederationSyncError
from pgfleet.domain.models import Cluster, FederatedNode, Node, SyncLog
from pgfleet.services.audit import record_event
from pgfleet.services.federation import (
    NODE_STATUS_CONNECTED,
    ROLE_PARTNER,
    ROLE_PRINCIPLE,
    get_or_create_identity,
)
from pgfleet.services.nodes import cluster_payload, node_payload
from pgfleet.services.resilience import fan_out
from pgfleet.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DIRECTION_PUSH = "PUSH"
DIRECTION_PULL = "PULL"
ENTITY_FULL = "FULL"

SYNC_IN_PROGRESS = "IN_PROGRESS"
SYNC_COMPLETED = "COMPLETED"
SYNC_FAILED = "FAILED"

API_KEY_HEADER = "X-Federation-Api-Key"
INSTANCE_ID_HEADER = "X-Federation-Instance-Id"


@dataclass(frozen=True)
class PeerContext:
    instance_id: str
    node: FederatedNode | None
    is_self: bool


@dataclass
class PushResult:
    node_id: str
    success: bool
    entity_count: int
    error: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _sync_error(code: str, message: str, status_code: int = 403) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _auth_invalid() -> HTTPException:
    return _sync_error("FEDERATION_AUTH_INVALID", "Invalid federation credentials", 401)


def _keys_match(expected: str | None, provided: str) -> bool:
    if not expected:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


async def verify_federation_auth(
    session: AsyncSession,
    *,
    api_key: str | None,
    instance_id: str | None,
) -> PeerContext:
    """Authenticate a peer by api key and instance id.

    The caller is either this instance itself (its own identity key) or a
    federated node whose stored key matches. Anything else is rejected with the
    same error so callers cannot probe which half was wrong.
    """
    if not api_key or not instance_id:
        raise _auth_invalid()
    identity = await get_or_create_identity(session)
    if instance_id == identity.instance_id:
        if _keys_match(identity.api_key, api_key):
            return PeerContext(instance_id=instance_id, node=None, is_self=True)
        raise _auth_invalid()
    node = (
        await session.execute(select(FederatedNode).where(FederatedNode.instance_id == instance_id).limit(1))
    ).scalar_one_or_none()
    if node is None or not _keys_match(node.api_key, api_key):
        increment_counter("federation_auth_failures_total")
        raise _auth_invalid()
    return PeerContext(instance_id=instance_id, node=node, is_self=False)


async def heartbeat(session: AsyncSession, peer: PeerContext) -> dict[str, Any]:
    identity = await get_or_create_identity(session)
    now = _utc_now()
    if peer.node is not None:
        peer.node.last_heartbeat = now
        peer.node.status = NODE_STATUS_CONNECTED
        await session.commit()
    return {
        "status": "ok",
        "instance_id": identity.instance_id,
        "role": identity.role,
        "epoch": identity.epoch,
        "timestamp": now,
    }


async def get_full_sync_data(session: AsyncSession) -> dict[str, Any]:
    identity = await get_or_create_identity(session)
    if identity.role != ROLE_PRINCIPLE:
        raise _sync_error("FEDERATION_ROLE_INVALID", "Only Principle can provide sync data")
    clusters = (await session.execute(select(Cluster).order_by(Cluster.id))).scalars()
    nodes = (await session.execute(select(Node).order_by(Node.id))).scalars()
    return {
        "source_instance_id": identity.instance_id,
        "epoch": identity.epoch,
        "timestamp": _utc_now(),
        "clusters": [cluster_payload(cluster) for cluster in clusters],
        "nodes": [node_payload(node) for node in nodes],
    }


async def _apply_snapshot(session: AsyncSession, data: dict[str, Any]) -> int:
    # Clusters first so node foreign keys resolve.
    count = 0
    for item in data.get("clusters") or []:
        cluster = await session.get(Cluster, item["id"])
        if cluster is None:
            cluster = Cluster(id=item["id"])
            session.add(cluster)
        cluster.name = item["name"]
        cluster.description = item.get("description")
        count += 1
    await session.flush()
    for item in data.get("nodes") or []:
        node = await session.get(Node, item["id"])
        if node is None:
            node = Node(id=item["id"])
            session.add(node)
        node.cluster_id = item["cluster_id"]
        node.name = item["name"]
        node.host = item["host"]
        node.port = int(item.get("port") or 5432)
        node.role = item["role"]
        node.status = item["status"]
        node.connection_string = item.get("connection_string")
        node.replication_slot = item.get("replication_slot")
        node.ssl = bool(item.get("ssl", True))
        count += 1
    return count


async def receive_sync(session: AsyncSession, peer: PeerContext, data: dict[str, Any]) -> dict[str, Any]:
    identity = await get_or_create_identity(session)
    if identity.role != ROLE_PARTNER:
        raise _sync_error("FEDERATION_ROLE_INVALID", "Only Partners can receive sync data")
    if peer.node is None or peer.instance_id != identity.principle_id:
        raise _sync_error("FEDERATION_ROLE_INVALID", "Sync data must come from this instance's principle")

    peer_node_id = peer.node.id
    log = SyncLog(node_id=peer_node_id, direction=DIRECTION_PULL, entity_type=ENTITY_FULL, status=SYNC_IN_PROGRESS)
    session.add(log)
    await session.commit()
    try:
        count = await _apply_snapshot(session, data)
    except (KeyError, TypeError, ValueError) as exc:
        await session.rollback()
        message = f"Malformed sync payload: {exc}"
        log.status = SYNC_FAILED
        log.error_message = message
        log.completed_at = _utc_now()
        await session.commit()
        increment_counter("federation_syncs_total.failed")
        logger.warning("federation_sync_receive_failed node_id=%s", peer_node_id, exc_info=exc)
        raise _sync_error("FEDERATION_SYNC_FAILED", message, 400) from exc

    now = _utc_now()
    log.status = SYNC_COMPLETED
    log.entity_count = count
    log.completed_at = now
    peer.node.last_sync_at = now
    peer.node.last_heartbeat = now
    await session.commit()
    increment_counter("federation_syncs_total.received")
    logger.info("federation_sync_received node_id=%s entity_count=%s", peer.node.id, count)
    return {"status": SYNC_COMPLETED, "entity_count": count, "sync_log_id": log.id}


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=get_settings().federation_sync_timeout_s)


async def _push_to_partner(
    node: FederatedNode,
    *,
    instance_id: str,
    api_key: str,
    data: dict[str, Any],
) -> PushResult:
    url = f"{node.domain.rstrip('/')}/v1/federation/sync/receive"
    headers = {API_KEY_HEADER: api_key, INSTANCE_ID_HEADER: instance_id}
    async with _http_client() as client:
        try:
            response = await client.post(url, json=data, headers=headers)
        except httpx.HTTPError as exc:
            raise FederationSyncError(f"Partner unreachable: {exc}") from exc
    if response.status_code >= 400:
        raise FederationSyncError(f"Partner rejected sync with HTTP {response.status_code}")
    count = len(data.get("clusters") or []) + len(data.get("nodes") or [])
    return PushResult(node_id=node.id, success=True, entity_count=count)


async def trigger_sync(
    session: AsyncSession,
    *,
    node_id: str | None = None,
    actor_id: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Push a full snapshot to every sync-enabled partner (or one of them).

    Sync logs are written IN_PROGRESS before any network call so a crash
    mid-push leaves a visible trace. Partner failures are recorded per log and
    never abort the batch.
    """
    data = await get_full_sync_data(session)
    identity = await get_or_create_identity(session)
    stmt = select(FederatedNode).where(FederatedNode.role == ROLE_PARTNER, FederatedNode.sync_enabled.is_(True))
    if node_id:
        stmt = stmt.where(FederatedNode.id == node_id)
    partners = list((await session.execute(stmt.order_by(FederatedNode.id))).scalars())

    logs: dict[str, SyncLog] = {}
    for partner in partners:
        log = SyncLog(node_id=partner.id, direction=DIRECTION_PUSH, entity_type=ENTITY_FULL, status=SYNC_IN_PROGRESS)
        session.add(log)
        logs[partner.id] = log
    await session.commit()

    wire = jsonable_encoder(data)
    settings = get_settings()
    results = await fan_out(
        "federation_sync",
        partners,
        lambda partner: _push_to_partner(partner, instance_id=identity.instance_id, api_key=identity.api_key, data=wire),
        limit=max(1, settings.credential_propagation_concurrency),
        timeout_s=settings.federation_sync_timeout_s,
        key=lambda partner: partner.id,
        on_error=lambda partner, exc: PushResult(
            node_id=partner.id,
            success=False,
            entity_count=0,
            error=str(exc) or type(exc).__name__,
        ),
    )

    now = _utc_now()
    by_id = {partner.id: partner for partner in partners}
    for result in results:
        log = logs[result.node_id]
        log.completed_at = now
        log.entity_count = result.entity_count
        if result.success:
            log.status = SYNC_COMPLETED
            by_id[result.node_id].last_sync_at = now
            increment_counter("federation_syncs_total.pushed")
        else:
            log.status = SYNC_FAILED
            log.error_message = result.error
            increment_counter("federation_syncs_total.failed")
            logger.warning("federation_sync_push_failed node_id=%s error=%s", result.node_id, result.error)
    await session.commit()

    summary = {
        "total": len(results),
        "successful": sum(1 for result in results if result.success),
        "failed": sum(1 for result in results if not result.success),
    }
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="federation_sync",
        entity_id=node_id,
        action="federation.sync_triggered",
        outcome="success" if summary["failed"] == 0 else "partial",
        after_state=summary,
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return {
        "summary": summary,
        "results": [
            {
                "node_id": result.node_id,
                "success": result.success,
                "entity_count": result.entity_count,
                "error": result.error,
                "sync_log_id": logs[result.node_id].id,
            }
            for result in results
        ],
    }


async def list_sync_logs(session: AsyncSession, *, node_id: str, limit: int = 100) -> list[SyncLog]:
    stmt = select(SyncLog).where(SyncLog.node_id == node_id).order_by(SyncLog.started_at.desc()).limit(limit)
    return list((await session.execute(stmt)).scalars())
