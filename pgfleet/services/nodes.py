from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from pgfleet.core.config import get_settings
from pgfleet.domain.models import (
    Cluster,
    CredentialAlert,
    CredentialPropagation,
    FailoverOperation,
    Node,
    NodeLifecycleEvent,
    SuperuserCredential,
)
from pgfleet.services.pg_client import NodeConnectionConfig, build_connection_string, parse_connection_string


logger = logging.getLogger(__name__)

ROLE_PRIMARY = "PRIMARY"
ROLE_REPLICA = "REPLICA"
NODE_ROLES = {ROLE_PRIMARY, ROLE_REPLICA}

STATUS_ONLINE = "ONLINE"
STATUS_OFFLINE = "OFFLINE"
NODE_STATUSES = {STATUS_ONLINE, STATUS_OFFLINE}

EVENT_DEMOTED = "DEMOTED"
EVENT_PROMOTED = "PROMOTED"


def _registry_error(code: str, message: str, status_code: int = 400) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def cluster_payload(cluster: Cluster) -> dict[str, Any]:
    return {
        "id": cluster.id,
        "name": cluster.name,
        "description": cluster.description,
        "created_at": cluster.created_at,
    }


def node_payload(node: Node) -> dict[str, Any]:
    return {
        "id": node.id,
        "cluster_id": node.cluster_id,
        "name": node.name,
        "host": node.host,
        "port": node.port,
        "role": node.role,
        "status": node.status,
        "connection_string": node.connection_string,
        "replication_slot": node.replication_slot,
        "ssl": node.ssl,
        "created_at": node.created_at,
        "updated_at": node.updated_at,
    }


def lifecycle_event_payload(event: NodeLifecycleEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "node_id": event.node_id,
        "cluster_id": event.cluster_id,
        "event_type": event.event_type,
        "from_status": event.from_status,
        "to_status": event.to_status,
        "details": event.details_json or {},
        "created_at": event.created_at,
    }


async def register_cluster(session: AsyncSession, *, name: str, description: str | None = None) -> Cluster:
    cluster = Cluster(name=name.strip(), description=description)
    if not cluster.name:
        raise _registry_error("CLUSTER_INVALID", "Cluster name is required")
    session.add(cluster)
    await session.commit()
    return cluster


async def get_cluster(session: AsyncSession, cluster_id: str) -> Cluster:
    cluster = await session.get(Cluster, cluster_id)
    if cluster is None:
        raise _registry_error("CLUSTER_NOT_FOUND", "Cluster not found", 404)
    return cluster


async def list_clusters(session: AsyncSession) -> list[Cluster]:
    return list((await session.execute(select(Cluster).order_by(Cluster.created_at, Cluster.id))).scalars())


async def _primary_for_cluster(session: AsyncSession, cluster_id: str) -> Node | None:
    stmt = select(Node).where(Node.cluster_id == cluster_id, Node.role == ROLE_PRIMARY).limit(1)
    return (await session.execute(stmt)).scalar_one_or_none()


async def register_node(
    session: AsyncSession,
    *,
    cluster_id: str,
    name: str,
    host: str | None = None,
    port: int | None = None,
    role: str,
    status: str = STATUS_ONLINE,
    connection_string: str | None = None,
    replication_slot: str | None = None,
    ssl: bool | None = None,
) -> Node:
    # Only one PRIMARY per cluster may be registered at a time.
    await get_cluster(session, cluster_id)
    role = role.upper()
    status = status.upper()
    if role not in NODE_ROLES:
        raise _registry_error("NODE_INVALID", f"Unsupported node role: {role}")
    if status not in NODE_STATUSES:
        raise _registry_error("NODE_INVALID", f"Unsupported node status: {status}")

    settings = get_settings()
    stored_connection: str | None = None
    if connection_string:
        try:
            parsed = parse_connection_string(connection_string)
        except ValueError as exc:
            raise _registry_error("NODE_INVALID", str(exc)) from exc
        host = host or parsed.host
        port = port or parsed.port
        ssl = parsed.ssl if ssl is None else ssl
        # Persist the address only; passwords belong to the managed credential.
        stored_connection = build_connection_string(parsed)
    if not host:
        raise _registry_error("NODE_INVALID", "Node host is required")

    if role == ROLE_PRIMARY and await _primary_for_cluster(session, cluster_id) is not None:
        raise _registry_error("NODE_PRIMARY_EXISTS", "Cluster already has a primary node", 409)

    node = Node(
        cluster_id=cluster_id,
        name=name,
        host=host,
        port=int(port or 5432),
        role=role,
        status=status,
        connection_string=stored_connection,
        replication_slot=replication_slot,
        ssl=settings.node_default_ssl if ssl is None else bool(ssl),
    )
    session.add(node)
    await session.commit()
    logger.info("node_registered node_id=%s cluster_id=%s role=%s", node.id, cluster_id, role)
    return node


async def get_node(session: AsyncSession, node_id: str) -> Node | None:
    return await session.get(Node, node_id)


async def require_node(session: AsyncSession, node_id: str) -> Node:
    node = await get_node(session, node_id)
    if node is None:
        raise _registry_error("NODE_NOT_FOUND", "Node not found", 404)
    return node


async def list_nodes(session: AsyncSession, *, cluster_id: str | None = None) -> list[Node]:
    stmt = select(Node).order_by(Node.id)
    if cluster_id:
        stmt = stmt.where(Node.cluster_id == cluster_id)
    return list((await session.execute(stmt)).scalars())


def set_node_role(node: Node, *, role: str, status: str) -> None:
    # Callers commit; role swaps must land in the same transaction as their operation.
    node.role = role
    node.status = status


async def delete_node(session: AsyncSession, node_id: str) -> None:
    node = await require_node(session, node_id)
    referenced = (
        await session.execute(
            select(FailoverOperation.id)
            .where(
                or_(
                    FailoverOperation.source_node_id == node_id,
                    FailoverOperation.target_node_id == node_id,
                )
            )
            .limit(1)
        )
    ).scalar_one_or_none()
    if referenced is not None:
        raise _registry_error("NODE_IN_USE", "Node is referenced by a failover operation", 409)
    await session.execute(delete(CredentialPropagation).where(CredentialPropagation.node_id == node_id))
    await session.execute(delete(CredentialAlert).where(CredentialAlert.node_id == node_id))
    await session.delete(node)
    await session.commit()
    logger.info("node_deleted node_id=%s", node_id)


def record_lifecycle_event(
    session: AsyncSession,
    *,
    node: Node,
    event_type: str,
    from_status: str | None,
    to_status: str | None,
    details: dict[str, Any] | None = None,
) -> NodeLifecycleEvent:
    event = NodeLifecycleEvent(
        node_id=node.id,
        cluster_id=node.cluster_id,
        event_type=event_type,
        from_status=from_status,
        to_status=to_status,
        details_json=details or {},
    )
    session.add(event)
    return event


async def list_lifecycle_events(
    session: AsyncSession,
    *,
    node_id: str | None = None,
    cluster_id: str | None = None,
    limit: int = 100,
) -> list[NodeLifecycleEvent]:
    stmt = select(NodeLifecycleEvent).order_by(NodeLifecycleEvent.created_at.desc(), NodeLifecycleEvent.id)
    if node_id:
        stmt = stmt.where(NodeLifecycleEvent.node_id == node_id)
    if cluster_id:
        stmt = stmt.where(NodeLifecycleEvent.cluster_id == cluster_id)
    return list((await session.execute(stmt.limit(limit))).scalars())


async def connection_config_for(session: AsyncSession, node: Node) -> NodeConnectionConfig | None:
    """Build the admin connection for ``node``.

    The managed superuser credential wins when it exists; otherwise fall back to
    whatever user the registered connection string names, which only works for
    trust or peer auth setups. Returns None when no user is known at all.
    """
    settings = get_settings()
    credential = (
        await session.execute(select(SuperuserCredential).order_by(SuperuserCredential.created_at).limit(1))
    ).scalar_one_or_none()
    base = NodeConnectionConfig(
        host=node.host,
        port=node.port,
        user="",
        password="",
        database=settings.node_admin_database,
        ssl=node.ssl,
    )
    if node.connection_string:
        parsed = parse_connection_string(node.connection_string)
        base = NodeConnectionConfig(
            host=node.host,
            port=node.port,
            user=parsed.user,
            password=parsed.password,
            database=settings.node_admin_database,
            ssl=node.ssl,
        )
    if credential is not None:
        return base.with_credentials(user=credential.username, password=credential.current_password)
    if not base.user:
        return None
    return base
