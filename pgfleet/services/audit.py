from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from pgfleet.domain.models import AuditEvent
from pgfleet.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
_SECRET_FRAGMENTS = ("password", "secret", "token", "api_key", "authorization")
# Labels ("history_2") and counts describe a secret without revealing it.
_DESCRIPTIVE_KEYS = frozenset({"password_used", "password_history_count"})


def _redact_key(key: str) -> bool:
    lowered = key.lower()
    return lowered not in _DESCRIPTIVE_KEYS and any(fragment in lowered for fragment in _SECRET_FRAGMENTS)


def sanitize_metadata(value: Any) -> Any:
    """Copy ``value`` with secret-looking keys replaced by ``[REDACTED]``.

    Dicts and lists are walked recursively; datetimes become ISO strings so the
    result fits a JSON column.
    """
    if isinstance(value, dict):
        return {
            str(key): REDACTED if _redact_key(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def get_request_id(request: Request | None) -> str | None:
    if request is None:
        return None
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")


async def _persist(session: AsyncSession, event: AuditEvent, *, commit: bool) -> None:
    session.add(event)
    if commit:
        await session.commit()


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    actor_id: str | None,
    actor_role: str | None = None,
    entity_type: str,
    entity_id: str | None,
    action: str,
    outcome: str = "success",
    before_state: dict[str, Any] | None = None,
    after_state: dict[str, Any] | None = None,
    request_id: str | None = None,
    error_code: str | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Append one audit row for a control-plane mutation or denial.

    With no ``session`` the row is written in its own transaction. With a
    caller session it joins that transaction and is committed only when
    ``commit`` is set. Write failures are logged; they propagate only when
    ``best_effort`` is False.
    """
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        actor_id=actor_id,
        actor_role=actor_role,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        outcome=outcome,
        before_state=None if before_state is None else sanitize_metadata(before_state),
        after_state=None if after_state is None else sanitize_metadata(after_state),
        request_id=request_id,
        error_code=error_code,
    )
    own_session = session is None
    target = SessionLocal() if own_session else session
    try:
        await _persist(target, event, commit=own_session or commit)
    except SQLAlchemyError as exc:
        if own_session or commit:
            await target.rollback()
        logger.log(
            logging.WARNING if best_effort else logging.ERROR,
            "audit_event_write_failed action=%s entity_type=%s entity_id=%s request_id=%s",
            action,
            entity_type,
            entity_id,
            request_id,
            exc_info=exc,
        )
        if not best_effort:
            raise
    finally:
        if own_session:
            await target.close()
