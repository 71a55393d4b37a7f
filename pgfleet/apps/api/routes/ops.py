from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pgfleet.apps.api.deps import Principal, get_db, require_role
from pgfleet.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from pgfleet.apps.api.response import SuccessEnvelope, success_response
from pgfleet.domain.models import CredentialAlert, FailoverOperation, FederationRequest
from pgfleet.services.audit import get_request_id, record_event
from pgfleet.services.failover import ACTIVE_STATUSES
from pgfleet.services.failover_queue import get_queue_depth
from pgfleet.services.telemetry import (
    counters_snapshot,
    gauges_snapshot,
    node_call_summary,
    p95_request_latency,
)


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


def _db_error(message: str) -> HTTPException:
    return HTTPException(status_code=503, detail={"code": "DB_UNAVAILABLE", "message": message})


async def _check_db_health(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return False
    return True


@router.get("/health", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_health(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    db_ok = await _check_db_health(db)
    queue_depth = await get_queue_depth()
    redis_ok = queue_depth is not None
    payload = {
        "status": "ok" if db_ok and redis_ok else "degraded",
        "api": "ok",
        "db": "ok" if db_ok else "degraded",
        "queue": "ok" if redis_ok else "degraded",
        "queue_depth": queue_depth,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return success_response(request=request, data=payload)


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_metrics(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    # JSON metrics for dashboards; counters are process-local.
    try:
        active_failovers = await db.scalar(
            select(func.count()).select_from(FailoverOperation).where(FailoverOperation.status.in_(ACTIVE_STATUSES))
        )
        open_alerts = await db.scalar(
            select(func.count()).select_from(CredentialAlert).where(CredentialAlert.resolved.is_(False))
        )
        pending_requests = await db.scalar(
            select(func.count()).select_from(FederationRequest).where(FederationRequest.status == "PENDING")
        )
    except SQLAlchemyError as exc:
        raise _db_error("Database error while aggregating control-plane metrics") from exc

    counters = counters_snapshot()
    payload = {
        "counters": {
            "pgfleet_failover_created_total": counters.get("failover_operations_total.created", 0),
            "pgfleet_failover_completed_total": counters.get("failover_operations_total.completed", 0),
            "pgfleet_failover_failed_total": counters.get("failover_operations_total.failed", 0),
            "pgfleet_failover_rolled_back_total": counters.get("failover_operations_total.rolled_back", 0),
            "pgfleet_credential_reenrollment_alerts_total": counters.get("credential_reenrollment_alerts_total", 0),
            "pgfleet_federation_promotions_timeout_total": counters.get("federation_promotions_total.timeout", 0),
            "pgfleet_federation_promotions_superseded_total": counters.get(
                "federation_promotions_total.superseded", 0
            ),
            "pgfleet_advisory_lock_contended_total": counters.get("advisory_lock_contended_total", 0),
        },
        "gauges": {
            "pgfleet_failover_active": int(active_failovers or 0),
            "pgfleet_credential_alerts_open": int(open_alerts or 0),
            "pgfleet_federation_requests_pending": int(pending_requests or 0),
            "pgfleet_control_queue_depth": await get_queue_depth(),
        },
        "telemetry_counters": counters,
        "telemetry_gauges": gauges_snapshot(),
        "request_latency_p95_ms": p95_request_latency(3600),
        "node_calls": node_call_summary(3600),
    }
    await record_event(
        session=db,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        entity_type="ops",
        entity_id="metrics",
        action="ops.viewed",
        after_state={"path": request.url.path},
        request_id=get_request_id(request),
        commit=True,
        best_effort=True,
    )
    return success_response(request=request, data=payload)
