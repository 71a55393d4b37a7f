from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pgfleet.core.config import get_settings
from pgfleet.core.errors import NodeCommandError, NodeConnectionError, PgFleetError
from pgfleet.domain.models import FailoverOperation, Node
from pgfleet.persistence.db import SessionLocal
from pgfleet.services import pg_client
from pgfleet.services.audit import record_event
from pgfleet.services.failover_queue import enqueue_failover_job, failover_job_id
from pgfleet.services.locks import advisory_lock, cluster_scope
from pgfleet.services.nodes import (
    EVENT_DEMOTED,
    EVENT_PROMOTED,
    ROLE_PRIMARY,
    ROLE_REPLICA,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    connection_config_for,
    record_lifecycle_event,
    set_node_role,
)
from pgfleet.services.pg_client import NodeConnectionConfig, PostgresNodeClient
from pgfleet.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

FAILOVER_STATUS_PENDING = "PENDING"
FAILOVER_STATUS_PRE_CHECK = "PRE_CHECK"
FAILOVER_STATUS_IN_PROGRESS = "IN_PROGRESS"
FAILOVER_STATUS_VALIDATING = "VALIDATING"
FAILOVER_STATUS_COMPLETED = "COMPLETED"
FAILOVER_STATUS_FAILED = "FAILED"
FAILOVER_STATUS_ROLLED_BACK = "ROLLED_BACK"

FAILOVER_TYPE_PLANNED = "PLANNED"
FAILOVER_TYPE_UNPLANNED = "UNPLANNED"
FAILOVER_TYPES = {FAILOVER_TYPE_PLANNED, FAILOVER_TYPE_UNPLANNED}

ACTIVE_STATUSES = (
    FAILOVER_STATUS_PRE_CHECK,
    FAILOVER_STATUS_IN_PROGRESS,
    FAILOVER_STATUS_VALIDATING,
)
TERMINAL_STATUSES = (
    FAILOVER_STATUS_COMPLETED,
    FAILOVER_STATUS_FAILED,
    FAILOVER_STATUS_ROLLED_BACK,
)

STEP_DRAIN = "drain_connections"
STEP_PROMOTE = "promote_target"
STEP_REGISTRY = "update_registry"
STEP_VALIDATE = "validate_promotion"
STEP_FINALIZE = "finalize"
JOB_STEPS = (STEP_DRAIN, STEP_PROMOTE, STEP_REGISTRY, STEP_VALIDATE, STEP_FINALIZE)

CHECK_SOURCE_PRIMARY = "Source Node is Primary"
CHECK_TARGET_REPLICA = "Target Node is Replica"
CHECK_TARGET_ONLINE = "Target Node Online"
CHECK_SOURCE_REACHABLE = "Source Reachable"
CHECK_TARGET_REACHABLE = "Target Reachable"
CHECK_REPLICATION_LAG = "Replication Lag"
CHECK_ACTIVE_CONNECTIONS = "Active Connections"

ROLLBACK_MODE_BOOKKEEPING = "bookkeeping"
ROLLBACK_MODE_COMPENSATE = "compensate"


@dataclass(frozen=True)
class PreCheckResult:
    name: str
    passed: bool
    message: str


class FailoverValidationError(PgFleetError):
    """Post-promotion validation found the target still in recovery."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _failover_error(code: str, message: str, status_code: int = 400) -> HTTPException:
    # Keep failover errors stable for operator automation.
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _state_transition_allowed(current: str, target: str) -> bool:
    # Enforce an explicit failover state machine to prevent invalid transitions.
    allowed: dict[str, set[str]] = {
        FAILOVER_STATUS_PENDING: {FAILOVER_STATUS_PRE_CHECK, FAILOVER_STATUS_FAILED},
        FAILOVER_STATUS_PRE_CHECK: {FAILOVER_STATUS_IN_PROGRESS, FAILOVER_STATUS_FAILED},
        FAILOVER_STATUS_IN_PROGRESS: {FAILOVER_STATUS_VALIDATING, FAILOVER_STATUS_FAILED},
        FAILOVER_STATUS_VALIDATING: {FAILOVER_STATUS_COMPLETED, FAILOVER_STATUS_FAILED},
        FAILOVER_STATUS_COMPLETED: {FAILOVER_STATUS_ROLLED_BACK},
        FAILOVER_STATUS_FAILED: {FAILOVER_STATUS_ROLLED_BACK},
        FAILOVER_STATUS_ROLLED_BACK: set(),
    }
    return target in allowed.get(current, set())


def _transition(operation: FailoverOperation, target: str, *, message: str | None = None) -> None:
    if not _state_transition_allowed(operation.status, target):
        raise _failover_error(
            "FAILOVER_INVALID_STATE",
            message or f"Cannot move failover from {operation.status} to {target}",
        )
    operation.status = target


def _append_step(operation: FailoverOperation, message: str) -> None:
    # Reassign so the JSON column is flagged dirty; existing entries are never edited.
    entry = {"timestamp": _utc_now().isoformat(), "message": message}
    operation.steps_json = [*(operation.steps_json or []), entry]


def failover_payload(operation: FailoverOperation) -> dict[str, Any]:
    return {
        "id": operation.id,
        "cluster_id": operation.cluster_id,
        "source_node_id": operation.source_node_id,
        "target_node_id": operation.target_node_id,
        "type": operation.type,
        "status": operation.status,
        "reason": operation.reason,
        "pre_checks": list(operation.pre_checks_json or []),
        "steps": list(operation.steps_json or []),
        "initiated_by": operation.initiated_by,
        "error_message": operation.error_message,
        "last_completed_step": operation.last_completed_step,
        "created_at": operation.created_at,
        "started_at": operation.started_at,
        "completed_at": operation.completed_at,
        "rolled_back_at": operation.rolled_back_at,
    }


def _audit_state(operation: FailoverOperation) -> dict[str, Any]:
    return {
        "status": operation.status,
        "source_node_id": operation.source_node_id,
        "target_node_id": operation.target_node_id,
        "last_completed_step": operation.last_completed_step,
    }


async def _probe(awaitable: Awaitable[Any], *, timeout_s: float) -> tuple[Any, Exception | None]:
    # Convert node I/O failures into values so one bad probe cannot sink the others.
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s), None
    except asyncio.TimeoutError:
        return None, NodeConnectionError(f"timed out after {timeout_s:g}s")
    except PgFleetError as exc:
        return None, exc


async def _no_config() -> Any:
    raise NodeConnectionError("no credentials available for node")


async def run_pre_checks(
    session: AsyncSession,
    *,
    source: Node,
    target: Node,
    client: PostgresNodeClient,
) -> list[PreCheckResult]:
    """Evaluate the failover pre-checks for a source/target pair.

    Role and status checks read the registry. Reachability, replication lag and
    the active-connection count are probed concurrently against the live nodes,
    each bounded by ``failover_precheck_timeout_s``. The returned list always has
    the same names in the same order; probe errors become failed checks.
    """
    settings = get_settings()
    timeout_s = settings.failover_precheck_timeout_s
    source_config = await connection_config_for(session, source)
    target_config = await connection_config_for(session, target)

    def _call(config: NodeConnectionConfig | None, method: str) -> Awaitable[Any]:
        if config is None:
            return _no_config()
        return getattr(client, method)(config)

    (source_ok, source_err), (target_ok, target_err), (lag_ms, lag_err), (active, active_err) = (
        await asyncio.gather(
            _probe(_call(source_config, "test_connection"), timeout_s=timeout_s),
            _probe(_call(target_config, "test_connection"), timeout_s=timeout_s),
            _probe(_call(target_config, "replication_lag_ms"), timeout_s=timeout_s),
            _probe(_call(source_config, "active_connection_count"), timeout_s=timeout_s),
        )
    )

    checks = [
        PreCheckResult(
            name=CHECK_SOURCE_PRIMARY,
            passed=source.role == ROLE_PRIMARY,
            message=f"Source node role: {source.role}",
        ),
        PreCheckResult(
            name=CHECK_TARGET_REPLICA,
            passed=target.role == ROLE_REPLICA,
            message=f"Target node role: {target.role}",
        ),
        PreCheckResult(
            name=CHECK_TARGET_ONLINE,
            passed=target.status == STATUS_ONLINE,
            message=f"Target node status: {target.status}",
        ),
        PreCheckResult(
            name=CHECK_SOURCE_REACHABLE,
            passed=bool(source_ok),
            message="Source node accepted a connection"
            if source_ok
            else f"Source node is unreachable: {source_err or 'authentication failed'}",
        ),
        PreCheckResult(
            name=CHECK_TARGET_REACHABLE,
            passed=bool(target_ok),
            message="Target node accepted a connection"
            if target_ok
            else f"Target node is unreachable: {target_err or 'authentication failed'}",
        ),
    ]

    threshold = settings.failover_max_replication_lag_ms
    if lag_err is not None:
        checks.append(
            PreCheckResult(CHECK_REPLICATION_LAG, False, f"Replication lag unavailable: {lag_err}")
        )
    elif lag_ms is None:
        checks.append(
            PreCheckResult(CHECK_REPLICATION_LAG, False, "Replication lag unknown: target is not replaying WAL")
        )
    else:
        checks.append(
            PreCheckResult(
                CHECK_REPLICATION_LAG,
                lag_ms < threshold,
                f"Replication lag: {lag_ms}ms (threshold: {threshold}ms)",
            )
        )

    ceiling = settings.failover_max_active_connections
    if active_err is not None:
        checks.append(
            PreCheckResult(CHECK_ACTIVE_CONNECTIONS, False, f"Active connections unavailable: {active_err}")
        )
    else:
        checks.append(
            PreCheckResult(
                CHECK_ACTIVE_CONNECTIONS,
                active < ceiling,
                f"{active} active connections will be affected",
            )
        )
    return checks


async def _load_operation(session: AsyncSession, operation_id: str) -> FailoverOperation:
    operation = await session.get(FailoverOperation, operation_id)
    if operation is None:
        raise _failover_error("FAILOVER_NOT_FOUND", "Failover operation not found", 404)
    return operation


async def _active_operation_for_cluster(
    session: AsyncSession,
    cluster_id: str,
    *,
    exclude_id: str | None = None,
) -> FailoverOperation | None:
    stmt = select(FailoverOperation).where(
        FailoverOperation.cluster_id == cluster_id,
        FailoverOperation.status.in_(ACTIVE_STATUSES),
    )
    if exclude_id:
        stmt = stmt.where(FailoverOperation.id != exclude_id)
    return (await session.execute(stmt.limit(1))).scalar_one_or_none()


async def create_failover(
    session: AsyncSession,
    *,
    cluster_id: str,
    source_node_id: str,
    target_node_id: str,
    failover_type: str = FAILOVER_TYPE_PLANNED,
    reason: str | None = None,
    initiated_by: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
    client: PostgresNodeClient | None = None,
) -> FailoverOperation:
    # Pre-checks are recorded, never enforced here; the operation is always created PENDING.
    if not cluster_id or not source_node_id or not target_node_id:
        raise _failover_error("INVALID_NODE_IDS", "clusterId, sourceNodeId and targetNodeId are required")
    failover_type = (failover_type or FAILOVER_TYPE_PLANNED).upper()
    if failover_type not in FAILOVER_TYPES:
        raise _failover_error("FAILOVER_INVALID_TYPE", f"Unsupported failover type: {failover_type}")
    source = await session.get(Node, source_node_id)
    target = await session.get(Node, target_node_id)
    if (
        source is None
        or target is None
        or source_node_id == target_node_id
        or source.cluster_id != cluster_id
        or target.cluster_id != cluster_id
    ):
        raise _failover_error("INVALID_NODE_IDS", "Invalid node IDs")

    client = client or pg_client.get_node_client()
    checks = await run_pre_checks(session, source=source, target=target, client=client)

    async with advisory_lock(cluster_scope(cluster_id)):
        operation = FailoverOperation(
            cluster_id=cluster_id,
            source_node_id=source.id,
            target_node_id=target.id,
            type=failover_type,
            status=FAILOVER_STATUS_PENDING,
            reason=reason,
            pre_checks_json=[asdict(check) for check in checks],
            steps_json=[],
            initiated_by=initiated_by,
        )
        session.add(operation)
        await session.commit()
    failed = [check.name for check in checks if not check.passed]
    increment_counter("failover_operations_total.created")
    logger.info(
        "failover_created operation_id=%s cluster_id=%s failed_checks=%s",
        operation.id,
        cluster_id,
        ",".join(failed) or "none",
    )
    await record_event(
        session=session,
        actor_id=initiated_by,
        actor_role=actor_role,
        entity_type="failover_operation",
        entity_id=operation.id,
        action="failover.created",
        after_state={**_audit_state(operation), "failed_checks": failed, "type": failover_type},
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return operation


async def execute_failover(
    session: AsyncSession,
    operation_id: str,
    *,
    actor_id: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
) -> FailoverOperation:
    # Validate and move to PRE_CHECK synchronously; the durable job does the node work.
    operation = await _load_operation(session, operation_id)
    async with advisory_lock(cluster_scope(operation.cluster_id)):
        await session.refresh(operation)
        if operation.status != FAILOVER_STATUS_PENDING:
            raise _failover_error("FAILOVER_INVALID_STATE", "Operation must be pending to execute")
        settings = get_settings()
        failed_checks = [check["name"] for check in operation.pre_checks_json or [] if not check.get("passed")]
        if settings.failover_enforce_prechecks and failed_checks:
            raise _failover_error(
                "FAILOVER_PRECHECK_FAILED",
                f"Pre-checks failed: {', '.join(failed_checks)}",
            )
        if await _active_operation_for_cluster(session, operation.cluster_id, exclude_id=operation.id):
            raise _failover_error(
                "FAILOVER_IN_PROGRESS",
                "Another failover operation is already running for this cluster",
                409,
            )
        source = await session.get(Node, operation.source_node_id)
        target = await session.get(Node, operation.target_node_id)
        before = _audit_state(operation)
        _transition(operation, FAILOVER_STATUS_PRE_CHECK)
        operation.started_at = _utc_now()
        # Recorded before dispatch so a crash between commit and enqueue still names the arq job.
        operation.job_id = failover_job_id(operation.id)
        _append_step(
            operation,
            f"Starting failover from {source.name if source else operation.source_node_id} "
            f"to {target.name if target else operation.target_node_id}",
        )
        _append_step(operation, "Running pre-flight checks")
        await session.commit()
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="failover_operation",
        entity_id=operation.id,
        action="failover.executed",
        before_state=before,
        after_state=_audit_state(operation),
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    await enqueue_failover_job(operation.id)
    await session.refresh(operation)
    return operation


async def _step_drain(
    session: AsyncSession,
    operation: FailoverOperation,
    *,
    source: Node,
    client: PostgresNodeClient,
) -> None:
    failed_checks = [check["name"] for check in operation.pre_checks_json or [] if not check.get("passed")]
    if operation.status == FAILOVER_STATUS_PRE_CHECK:
        if failed_checks:
            _append_step(
                operation,
                f"Pre-flight checks completed with failures ({', '.join(failed_checks)}); proceeding",
            )
        else:
            _append_step(operation, "Pre-flight checks passed")
        _transition(operation, FAILOVER_STATUS_IN_PROGRESS)
    _append_step(operation, "Draining connections from source node")
    await session.commit()
    source_config = await connection_config_for(session, source)
    if source_config is None:
        _append_step(operation, "Connection drain skipped: no credentials available for source node")
        return
    try:
        terminated = await client.terminate_backends(source_config)
    except (NodeConnectionError, NodeCommandError) as exc:
        # Source may already be down in an unplanned failover.
        logger.warning("failover_drain_failed operation_id=%s", operation.id, exc_info=exc)
        _append_step(operation, f"Connection drain failed (continuing): {exc}")
        return
    _append_step(operation, f"Terminated {terminated} connection(s) on source node")


async def _step_promote(
    session: AsyncSession,
    operation: FailoverOperation,
    *,
    target: Node,
    client: PostgresNodeClient,
) -> None:
    settings = get_settings()
    _append_step(operation, "Promoting target node to primary")
    await session.commit()
    target_config = await connection_config_for(session, target)
    if target_config is None:
        raise NodeConnectionError("No credentials available for target node")
    try:
        in_recovery = await client.is_in_recovery(target_config)
    except PgFleetError as exc:
        in_recovery = True
        _append_step(operation, f"Could not read recovery state before promotion: {exc}")
    if not in_recovery:
        _append_step(operation, "Target node is already out of recovery; skipping pg_promote")
        return
    try:
        promoted = await client.promote(target_config, wait=True, timeout_s=settings.failover_promote_timeout_s)
    except PgFleetError as exc:
        # Record what the database reported; validation decides the outcome.
        logger.warning("failover_promote_call_failed operation_id=%s", operation.id, exc_info=exc)
        _append_step(operation, f"pg_promote reported an error: {exc}")
        return
    _append_step(operation, f"pg_promote returned {str(promoted).lower()}")


async def _step_registry(
    session: AsyncSession,
    operation: FailoverOperation,
    *,
    source: Node,
    target: Node,
) -> None:
    _append_step(operation, "Demoting source node to replica")
    set_node_role(source, role=ROLE_REPLICA, status=STATUS_OFFLINE)
    set_node_role(target, role=ROLE_PRIMARY, status=STATUS_ONLINE)
    _append_step(operation, "Node registry updated: target is PRIMARY, source is REPLICA/OFFLINE")


async def _step_validate(
    session: AsyncSession,
    operation: FailoverOperation,
    *,
    target: Node,
    client: PostgresNodeClient,
) -> None:
    if operation.status == FAILOVER_STATUS_IN_PROGRESS:
        _transition(operation, FAILOVER_STATUS_VALIDATING)
    _append_step(operation, "Validating replication setup")
    await session.commit()
    target_config = await connection_config_for(session, target)
    if target_config is None:
        raise NodeConnectionError("No credentials available for target node")
    if await client.is_in_recovery(target_config):
        raise FailoverValidationError("Target node is still in recovery after promotion")
    _append_step(operation, "Target node is accepting writes (not in recovery)")


async def _step_finalize(
    session: AsyncSession,
    operation: FailoverOperation,
    *,
    source: Node,
    target: Node,
) -> None:
    _append_step(
        operation,
        f"Old primary {source.name} requires manual reconfiguration as a standby",
    )
    _append_step(operation, "Failover completed successfully")
    _transition(operation, FAILOVER_STATUS_COMPLETED)
    operation.completed_at = _utc_now()
    details = {"failover_operation_id": operation.id}
    record_lifecycle_event(
        session,
        node=source,
        event_type=EVENT_DEMOTED,
        from_status=ROLE_PRIMARY,
        to_status=ROLE_REPLICA,
        details=details,
    )
    record_lifecycle_event(
        session,
        node=target,
        event_type=EVENT_PROMOTED,
        from_status=ROLE_REPLICA,
        to_status=ROLE_PRIMARY,
        details=details,
    )


async def run_failover_job(operation_id: str, *, client: PostgresNodeClient | None = None) -> str:
    """Drive an executing failover to a terminal state.

    Each step commits ``last_completed_step`` when it finishes, so a job picked
    up again after a crash continues after the last finished step. Steps are
    written so that redoing the interrupted one is harmless. Returns the final
    status; operations that are not executing are left untouched.
    """
    client = client or pg_client.get_node_client()
    async with SessionLocal() as session:
        operation = await session.get(FailoverOperation, operation_id)
        if operation is None:
            logger.warning("failover_job_missing_operation operation_id=%s", operation_id)
            return "MISSING"
        if operation.status not in ACTIVE_STATUSES:
            logger.info("failover_job_skipped operation_id=%s status=%s", operation_id, operation.status)
            return operation.status

        source = await session.get(Node, operation.source_node_id)
        target = await session.get(Node, operation.target_node_id)
        done = operation.last_completed_step
        remaining = JOB_STEPS[JOB_STEPS.index(done) + 1 :] if done in JOB_STEPS else JOB_STEPS
        if done:
            _append_step(operation, f"Resuming failover after step {done}")
        try:
            if source is None or target is None:
                raise NodeConnectionError("Source or target node no longer exists")
            for step in remaining:
                if step == STEP_DRAIN:
                    await _step_drain(session, operation, source=source, client=client)
                elif step == STEP_PROMOTE:
                    await _step_promote(session, operation, target=target, client=client)
                elif step == STEP_REGISTRY:
                    await _step_registry(session, operation, source=source, target=target)
                elif step == STEP_VALIDATE:
                    await _step_validate(session, operation, target=target, client=client)
                elif step == STEP_FINALIZE:
                    await _step_finalize(session, operation, source=source, target=target)
                operation.last_completed_step = step
                await session.commit()
        except Exception as exc:  # noqa: BLE001 - any step failure ends the operation as FAILED
            if isinstance(exc, SQLAlchemyError):
                await session.rollback()
                operation = await session.get(FailoverOperation, operation_id)
            operation.status = FAILOVER_STATUS_FAILED
            operation.error_message = str(exc) or exc.__class__.__name__
            _append_step(operation, f"Failover failed: {operation.error_message}")
            await session.commit()
            increment_counter("failover_operations_total.failed")
            logger.error("failover_failed operation_id=%s", operation_id, exc_info=exc)
            await record_event(
                session=session,
                actor_id=operation.initiated_by,
                entity_type="failover_operation",
                entity_id=operation.id,
                action="failover.failed",
                outcome="failure",
                after_state={**_audit_state(operation), "error_message": operation.error_message},
                error_code="FAILOVER_EXECUTION_FAILED",
                commit=True,
                best_effort=True,
            )
            return operation.status

        increment_counter("failover_operations_total.completed")
        logger.info("failover_completed operation_id=%s", operation_id)
        await record_event(
            session=session,
            actor_id=operation.initiated_by,
            entity_type="failover_operation",
            entity_id=operation.id,
            action="failover.completed",
            after_state=_audit_state(operation),
            commit=True,
            best_effort=True,
        )
        return operation.status


async def _compensate_rollback(
    session: AsyncSession,
    operation: FailoverOperation,
    *,
    source: Node,
    client: PostgresNodeClient,
) -> None:
    # Bring the original primary back to read-write; the promoted target still needs manual demotion.
    source_config = await connection_config_for(session, source)
    if source_config is None:
        _append_step(operation, "Compensating promotion skipped: no credentials available for source node")
        return
    try:
        if await client.is_in_recovery(source_config):
            promoted = await client.promote(source_config, wait=True, timeout_s=get_settings().failover_promote_timeout_s)
            _append_step(operation, f"pg_promote on source returned {str(promoted).lower()}")
        else:
            _append_step(operation, "Source node is already accepting writes")
    except PgFleetError as exc:
        logger.warning("failover_rollback_compensation_failed operation_id=%s", operation.id, exc_info=exc)
        _append_step(operation, f"Compensating promotion failed: {exc}")
    _append_step(operation, "Target node requires manual reconfiguration as a standby")


async def rollback_failover(
    session: AsyncSession,
    operation_id: str,
    *,
    actor_id: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
    client: PostgresNodeClient | None = None,
) -> FailoverOperation:
    operation = await _load_operation(session, operation_id)
    async with advisory_lock(cluster_scope(operation.cluster_id)):
        await session.refresh(operation)
        if operation.status not in (FAILOVER_STATUS_COMPLETED, FAILOVER_STATUS_FAILED):
            raise _failover_error(
                "FAILOVER_INVALID_STATE",
                "Can only rollback completed or failed operations",
            )
        source = await session.get(Node, operation.source_node_id)
        target = await session.get(Node, operation.target_node_id)
        if source is None or target is None:
            raise _failover_error("INVALID_NODE_IDS", "Invalid node IDs")
        before = _audit_state(operation)
        _append_step(operation, "Initiating rollback")
        _append_step(operation, "Restoring original primary")
        if get_settings().failover_rollback_mode.lower() == ROLLBACK_MODE_COMPENSATE:
            await _compensate_rollback(
                session,
                operation,
                source=source,
                client=client or pg_client.get_node_client(),
            )
        set_node_role(source, role=ROLE_PRIMARY, status=STATUS_ONLINE)
        set_node_role(target, role=ROLE_REPLICA, status=STATUS_ONLINE)
        _append_step(operation, "Rollback completed")
        _transition(operation, FAILOVER_STATUS_ROLLED_BACK)
        operation.rolled_back_at = _utc_now()
        await session.commit()
    increment_counter("failover_operations_total.rolled_back")
    logger.info("failover_rolled_back operation_id=%s", operation.id)
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="failover_operation",
        entity_id=operation.id,
        action="failover.rolled_back",
        before_state=before,
        after_state=_audit_state(operation),
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return operation


async def cancel_failover(
    session: AsyncSession,
    operation_id: str,
    *,
    actor_id: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
) -> FailoverOperation:
    operation = await _load_operation(session, operation_id)
    async with advisory_lock(cluster_scope(operation.cluster_id)):
        await session.refresh(operation)
        if operation.status != FAILOVER_STATUS_PENDING:
            raise _failover_error("FAILOVER_INVALID_STATE", "Can only cancel pending operations")
        before = _audit_state(operation)
        _transition(operation, FAILOVER_STATUS_FAILED)
        operation.error_message = "Cancelled by user"
        _append_step(operation, "Cancelled by user")
        await session.commit()
    increment_counter("failover_operations_total.cancelled")
    await record_event(
        session=session,
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type="failover_operation",
        entity_id=operation.id,
        action="failover.cancelled",
        before_state=before,
        after_state=_audit_state(operation),
        request_id=request_id,
        commit=True,
        best_effort=True,
    )
    return operation


async def get_failover(session: AsyncSession, operation_id: str) -> FailoverOperation:
    return await _load_operation(session, operation_id)


async def list_failovers(
    session: AsyncSession,
    *,
    cluster_id: str | None = None,
    limit: int = 50,
) -> list[FailoverOperation]:
    stmt = select(FailoverOperation).order_by(FailoverOperation.created_at.desc(), FailoverOperation.id)
    if cluster_id:
        stmt = stmt.where(FailoverOperation.cluster_id == cluster_id)
    return list((await session.execute(stmt.limit(limit))).scalars())


async def resume_incomplete_failovers() -> list[str]:
    # Re-dispatch executing operations left behind by a crashed worker or API process.
    async with SessionLocal() as session:
        rows = await session.execute(
            select(FailoverOperation.id)
            .where(FailoverOperation.status.in_(ACTIVE_STATUSES))
            .order_by(FailoverOperation.started_at)
        )
        operation_ids = [row[0] for row in rows]
    for operation_id in operation_ids:
        logger.info("failover_resume_dispatched operation_id=%s", operation_id)
        await enqueue_failover_job(operation_id, fresh=True)
    return operation_ids
