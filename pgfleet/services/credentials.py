from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import math
import secrets
from typing import Any

from fastapi import HTTPException
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pgfleet.core.config import get_settings
from pgfleet.core.errors import PgFleetError
from pgfleet.domain.models import CredentialAlert, CredentialPropagation, Node, SuperuserCredential
from pgfleet.services import pg_client
from pgfleet.services.audit import record_event
from pgfleet.services.locks import CREDENTIAL_SCOPE, advisory_lock
from pgfleet.services.nodes import list_nodes, node_payload, require_node
from pgfleet.services.pg_client import NodeConnectionConfig, PostgresNodeClient
from pgfleet.services.resilience import fan_out
from pgfleet.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

PASSWORD_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789!@#$%^&*()-_=+"

CREDENTIAL_STATUS_ACTIVE = "ACTIVE"
CREDENTIAL_STATUS_SYNCING = "SYNCING"
CREDENTIAL_STATUS_NEEDS_REENROLLMENT = "NEEDS_REENROLLMENT"

PROPAGATION_PENDING = "PENDING"
PROPAGATION_SUCCESS = "SUCCESS"
PROPAGATION_FAILED = "FAILED"
PROPAGATION_NEEDS_REENROLLMENT = "NEEDS_REENROLLMENT"

ALERT_REENROLLMENT_REQUIRED = "REENROLLMENT_REQUIRED"

PASSWORD_USED_CURRENT = "current"
REENROLLMENT_MESSAGE = "All passwords failed. Node requires manual re-enrollment."


@dataclass(frozen=True)
class PropagationResult:
    node_id: str
    node_name: str
    status: str
    password_used: str | None
    error_message: str | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _credential_error(code: str, message: str, status_code: int = 409) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def generate_password(length: int | None = None) -> str:
    size = length or get_settings().credential_password_length
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(size))


def history_label(index: int) -> str:
    # index is the position in [current, *history]; 0 is "current".
    return PASSWORD_USED_CURRENT if index == 0 else f"history_{index}"


def days_since(value: datetime, *, now: datetime | None = None) -> int:
    reference = now or _utc_now()
    return math.floor((reference - value).total_seconds() / 86400)


async def get_credential(session: AsyncSession) -> SuperuserCredential | None:
    stmt = select(SuperuserCredential).order_by(SuperuserCredential.created_at).limit(1)
    return (await session.execute(stmt)).scalar_one_or_none()


async def _require_credential(session: AsyncSession) -> SuperuserCredential:
    credential = await get_credential(session)
    if credential is None:
        raise _credential_error("CREDENTIAL_NOT_CONFIGURED", "No credentials found. Initialize first.")
    return credential


def credential_payload(credential: SuperuserCredential) -> dict[str, Any]:
    # Never expose the password or its history, only their shape.
    return {
        "id": credential.id,
        "username": credential.username,
        "status": credential.status,
        "rotation_interval_days": credential.rotation_interval_days,
        "last_rotated_at": credential.last_rotated_at,
        "next_rotation_at": credential.next_rotation_at,
        "password_history_count": len(credential.password_history or []),
        "password_age_days": days_since(credential.last_rotated_at),
    }


def propagation_payload(row: CredentialPropagation) -> dict[str, Any]:
    return {
        "node_id": row.node_id,
        "cluster_id": row.cluster_id,
        "status": row.status,
        "last_attempt_at": row.last_attempt_at,
        "success_at": row.success_at,
        "error_message": row.error_message,
        "password_used": row.password_used,
    }


def alert_payload(alert: CredentialAlert) -> dict[str, Any]:
    return {
        "id": alert.id,
        "node_id": alert.node_id,
        "cluster_id": alert.cluster_id,
        "alert_type": alert.alert_type,
        "message": alert.message,
        "resolved": alert.resolved,
        "resolved_at": alert.resolved_at,
        "resolved_by": alert.resolved_by,
        "created_at": alert.created_at,
    }


async def initialize_credential(
    session: AsyncSession,
    *,
    actor_id: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
) -> SuperuserCredential:
    settings = get_settings()
    async with advisory_lock(CREDENTIAL_SCOPE):
        if await get_credential(session) is not None:
            raise _credential_error("CREDENTIAL_ALREADY_INITIALIZED", "Credentials already initialized")
        now = _utc_now()
        credential = SuperuserCredential(
            username=settings.credential_username,
            current_password=generate_password(),
            password_history=[],
            rotation_interval_days=settings.credential_rotation_interval_days,
            last_rotated_at=now,
            next_rotation_at=now + timedelta(days=settings.credential_rotation_interval_days),
            status=CREDENTIAL_STATUS_ACTIVE,
        )
        session.add(credential)
        await session.commit()
    logger.info("credential_initialized credential_id=%s", credential.id)
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="superuser_credential",
        entity_id=credential.id,
        action="credential.initialized",
        after_state={"status": credential.status, "username": credential.username},
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return credential


async def _rotate_locked(session: AsyncSession, credential: SuperuserCredential) -> SuperuserCredential:
    # Caller holds the credential lock.
    settings = get_settings()
    now = _utc_now()
    history = [credential.current_password, *(credential.password_history or [])]
    credential.password_history = history[: settings.credential_history_size]
    credential.current_password = generate_password()
    credential.last_rotated_at = now
    credential.next_rotation_at = now + timedelta(days=credential.rotation_interval_days)
    credential.status = CREDENTIAL_STATUS_SYNCING
    await session.execute(
        update(CredentialPropagation)
        .where(CredentialPropagation.credential_id == credential.id)
        .values(status=PROPAGATION_PENDING, last_attempt_at=None)
    )
    await session.commit()
    increment_counter("credential_rotations_total")
    logger.info(
        "credential_rotated credential_id=%s history_count=%s",
        credential.id,
        len(credential.password_history),
    )
    return credential


async def rotate_credential(
    session: AsyncSession,
    *,
    actor_id: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
) -> SuperuserCredential:
    async with advisory_lock(CREDENTIAL_SCOPE):
        credential = await _require_credential(session)
        before = {"status": credential.status, "password_history_count": len(credential.password_history or [])}
        await _rotate_locked(session, credential)
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="superuser_credential",
        entity_id=credential.id,
        action="credential.rotated",
        before_state=before,
        after_state={
            "status": credential.status,
            "password_history_count": len(credential.password_history),
        },
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return credential


async def check_rotation(session: AsyncSession) -> dict[str, Any]:
    credential = await get_credential(session)
    if credential is None:
        return {"rotation_needed": False, "reason": "No credentials configured", "initialized": False}
    elapsed = days_since(credential.last_rotated_at)
    return {
        "rotation_needed": elapsed >= credential.rotation_interval_days,
        "days_since_rotation": elapsed,
        "rotation_interval_days": credential.rotation_interval_days,
        "last_rotated_at": credential.last_rotated_at,
        "next_rotation_at": credential.next_rotation_at,
        "status": credential.status,
        "initialized": True,
    }


async def auto_rotate(
    session: AsyncSession,
    *,
    force: bool = False,
    actor_id: str | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    # Rotate when the interval has elapsed or when forced; otherwise report the remaining time.
    async with advisory_lock(CREDENTIAL_SCOPE):
        credential = await get_credential(session)
        if credential is None:
            return {"rotated": False, "reason": "No credentials configured"}
        elapsed = days_since(credential.last_rotated_at)
        if elapsed < credential.rotation_interval_days and not force:
            return {
                "rotated": False,
                "reason": f"Rotation not due yet ({elapsed}/{credential.rotation_interval_days} days)",
                "next_rotation_at": credential.next_rotation_at,
            }
        await _rotate_locked(session, credential)
    await record_event(
        session=session,
        actor_id=actor_id or "scheduler",
        entity_type="superuser_credential",
        entity_id=credential.id,
        action="credential.auto_rotated",
        before_state={"days_since_rotation": elapsed, "forced": force},
        after_state={
            "status": credential.status,
            "password_history_count": len(credential.password_history),
        },
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return {
        "rotated": True,
        "reason": "Forced rotation" if force else "Scheduled rotation",
        "days_since_last_rotation": elapsed,
        "next_rotation_at": credential.next_rotation_at,
        "history_count": len(credential.password_history),
    }


def _node_base_config(node: Node) -> NodeConnectionConfig:
    settings = get_settings()
    return NodeConnectionConfig(
        host=node.host,
        port=node.port,
        user="",
        password="",
        database=settings.node_admin_database,
        ssl=node.ssl,
    )


async def attempt_propagation(
    node: Node,
    *,
    username: str,
    candidates: list[str],
    client: PostgresNodeClient,
) -> PropagationResult:
    """Bring ``node`` onto ``candidates[0]`` using the first candidate it accepts.

    ``candidates`` is ``[current, *history]``. If the current password already
    works nothing is changed. If an older one works, the node is switched to the
    current password with ``ALTER USER``. If none work the node needs manual
    re-enrollment. Pure node I/O: no database writes happen here.
    """
    base = _node_base_config(node)
    current = candidates[0]
    for index, password in enumerate(candidates):
        config = base.with_credentials(user=username, password=password)
        if not await client.test_connection(config):
            continue
        label = history_label(index)
        if index == 0:
            return PropagationResult(node.id, node.name, PROPAGATION_SUCCESS, label, None)
        try:
            await client.change_user_password(config, target_user=username, new_password=current)
        except PgFleetError as exc:
            return PropagationResult(
                node.id,
                node.name,
                PROPAGATION_FAILED,
                label,
                f"Connected with old password but failed to update: {exc}",
            )
        return PropagationResult(node.id, node.name, PROPAGATION_SUCCESS, label, None)
    return PropagationResult(node.id, node.name, PROPAGATION_NEEDS_REENROLLMENT, None, REENROLLMENT_MESSAGE)


async def _ensure_reenrollment_alert(session: AsyncSession, node: Node) -> CredentialAlert:
    # At most one unresolved alert per node and type.
    existing = (
        await session.execute(
            select(CredentialAlert)
            .where(
                CredentialAlert.node_id == node.id,
                CredentialAlert.alert_type == ALERT_REENROLLMENT_REQUIRED,
                CredentialAlert.resolved.is_(False),
            )
            .limit(1)
        )
    ).scalar_one_or_none()
    if existing is not None:
        return existing
    alert = CredentialAlert(
        node_id=node.id,
        cluster_id=node.cluster_id,
        alert_type=ALERT_REENROLLMENT_REQUIRED,
        message=(
            f"Node {node.name} ({node.host}) requires re-enrollment. "
            "None of the known superuser passwords were accepted."
        ),
        resolved=False,
    )
    session.add(alert)
    increment_counter("credential_reenrollment_alerts_total")
    logger.warning("credential_reenrollment_required node_id=%s host=%s", node.id, node.host)
    return alert


async def _apply_result(
    session: AsyncSession,
    credential: SuperuserCredential,
    node: Node,
    result: PropagationResult,
) -> CredentialPropagation:
    now = _utc_now()
    row = (
        await session.execute(
            select(CredentialPropagation).where(
                CredentialPropagation.credential_id == credential.id,
                CredentialPropagation.node_id == node.id,
            )
        )
    ).scalar_one_or_none()
    if row is None:
        row = CredentialPropagation(credential_id=credential.id, node_id=node.id, cluster_id=node.cluster_id)
        session.add(row)
    row.status = result.status
    row.last_attempt_at = now
    row.password_used = result.password_used
    row.error_message = result.error_message
    if result.status == PROPAGATION_SUCCESS:
        row.success_at = now
    if result.status == PROPAGATION_NEEDS_REENROLLMENT:
        await _ensure_reenrollment_alert(session, node)
    increment_counter(f"credential_propagations_total.{result.status.lower()}")
    return row


async def propagate_to_node(
    session: AsyncSession,
    node_id: str,
    *,
    actor_id: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
    client: PostgresNodeClient | None = None,
) -> PropagationResult:
    client = client or pg_client.get_node_client()
    node = await require_node(session, node_id)
    async with advisory_lock(CREDENTIAL_SCOPE):
        credential = await _require_credential(session)
        candidates = [credential.current_password, *(credential.password_history or [])]
        result = await attempt_propagation(
            node,
            username=credential.username,
            candidates=candidates,
            client=client,
        )
        await _apply_result(session, credential, node, result)
        if result.status == PROPAGATION_NEEDS_REENROLLMENT:
            credential.status = CREDENTIAL_STATUS_NEEDS_REENROLLMENT
        await session.commit()
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="credential_propagation",
        entity_id=node.id,
        action="credential.propagated",
        outcome="success" if result.status == PROPAGATION_SUCCESS else "failure",
        after_state={"status": result.status, "password_used": result.password_used},
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return result


async def propagate_all(
    session: AsyncSession,
    *,
    actor_id: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
    client: PostgresNodeClient | None = None,
) -> dict[str, Any]:
    """Propagate the current credential to every registered node.

    Node I/O fans out with ``credential_propagation_concurrency`` workers and a
    per-node timeout; database writes are applied afterwards, one node at a time
    in node id order, so results never depend on completion order.
    """
    settings = get_settings()
    client = client or pg_client.get_node_client()
    async with advisory_lock(CREDENTIAL_SCOPE):
        credential = await _require_credential(session)
        before_status = credential.status
        nodes = await list_nodes(session)
        by_id = {node.id: node for node in nodes}
        candidates = [credential.current_password, *(credential.password_history or [])]

        def _on_error(node: Node, exc: BaseException) -> PropagationResult:
            logger.warning("credential_propagation_error node_id=%s", node.id, exc_info=exc)
            reason = "timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc) or exc.__class__.__name__
            return PropagationResult(node.id, node.name, PROPAGATION_FAILED, None, f"Propagation attempt failed: {reason}")

        results = await fan_out(
            "credential_propagation",
            nodes,
            lambda node: attempt_propagation(
                node,
                username=credential.username,
                candidates=candidates,
                client=client,
            ),
            limit=settings.credential_propagation_concurrency,
            timeout_s=settings.credential_propagation_timeout_s,
            key=lambda node: node.id,
            on_error=_on_error,
        )
        for result in results:
            await _apply_result(session, credential, by_id[result.node_id], result)

        needs_reenrollment = sum(1 for result in results if result.status == PROPAGATION_NEEDS_REENROLLMENT)
        successful = sum(1 for result in results if result.status == PROPAGATION_SUCCESS)
        failed = sum(1 for result in results if result.status == PROPAGATION_FAILED)
        credential.status = (
            CREDENTIAL_STATUS_NEEDS_REENROLLMENT if needs_reenrollment else CREDENTIAL_STATUS_ACTIVE
        )
        await session.commit()

    summary = {
        "total": len(results),
        "successful": successful,
        "failed": failed,
        "needs_reenrollment": needs_reenrollment,
    }
    set_gauge("credential_nodes_needing_reenrollment", needs_reenrollment)
    logger.info("credential_propagate_all_finished %s", " ".join(f"{k}={v}" for k, v in summary.items()))
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="superuser_credential",
        entity_id=credential.id,
        action="credential.propagated_all",
        outcome="success" if not needs_reenrollment else "failure",
        before_state={"status": before_status},
        after_state={"status": credential.status, **summary},
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return {
        "summary": summary,
        "status": credential.status,
        "results": [
            {
                "node_id": result.node_id,
                "node_name": result.node_name,
                "status": result.status,
                "password_used": result.password_used,
                "error_message": result.error_message,
            }
            for result in results
        ],
    }


async def resolve_credential_alert(
    session: AsyncSession,
    alert_id: str,
    *,
    resolved_by: str | None,
    actor_role: str | None = None,
    request_id: str | None = None,
) -> CredentialAlert:
    alert = await session.get(CredentialAlert, alert_id)
    if alert is None:
        raise _credential_error("CREDENTIAL_ALERT_NOT_FOUND", "Alert not found", 404)
    if alert.resolved:
        return alert
    alert.resolved = True
    alert.resolved_at = _utc_now()
    alert.resolved_by = resolved_by
    await session.commit()
    await record_event(
        session=session,
        actor_id=resolved_by,
        actor_role=actor_role,
        entity_type="credential_alert",
        entity_id=alert.id,
        action="credential.alert_resolved",
        before_state={"resolved": False},
        after_state={"resolved": True, "node_id": alert.node_id},
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return alert


async def get_credential_status(session: AsyncSession) -> dict[str, Any]:
    credential = await get_credential(session)
    nodes = await list_nodes(session)
    propagations: list[CredentialPropagation] = []
    if credential is not None:
        propagations = list(
            (
                await session.execute(
                    select(CredentialPropagation)
                    .where(CredentialPropagation.credential_id == credential.id)
                    .order_by(CredentialPropagation.node_id)
                )
            ).scalars()
        )
    alerts = list(
        (
            await session.execute(
                select(CredentialAlert)
                .where(CredentialAlert.resolved.is_(False))
                .order_by(CredentialAlert.created_at.desc())
            )
        ).scalars()
    )
    return {
        "credential": credential_payload(credential) if credential else None,
        "propagations": [propagation_payload(row) for row in propagations],
        "nodes": [node_payload(node) for node in nodes],
        "alerts": [alert_payload(alert) for alert in alerts],
    }
