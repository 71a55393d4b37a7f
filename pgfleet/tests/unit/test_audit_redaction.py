from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from pgfleet.domain.models import AuditEvent
from pgfleet.persistence.db import SessionLocal
from pgfleet.services.audit import record_event, sanitize_metadata


def test_audit_redacts_passwords_and_keys() -> None:
    payload = {
        "current_password": "hunter2",
        "api_key": "cpf_abc",
        "nested": {"Authorization": "Bearer abc", "rotation_secret": "s"},
        "items": [{"password_history": ["a", "b"]}],
        "password_used": "history_2",
        "password_history_count": 3,
        "safe": "value",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["current_password"] == "[REDACTED]"
    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["nested"]["Authorization"] == "[REDACTED]"
    assert sanitized["nested"]["rotation_secret"] == "[REDACTED]"
    assert sanitized["items"][0]["password_history"] == "[REDACTED]"
    # Labels and counts describe secrets without revealing them.
    assert sanitized["password_used"] == "history_2"
    assert sanitized["password_history_count"] == 3
    assert sanitized["safe"] == "value"


def test_audit_serializes_datetimes() -> None:
    moment = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert sanitize_metadata({"at": moment}) == {"at": moment.isoformat()}


@pytest.mark.asyncio
async def test_record_event_persists_sanitized_state() -> None:
    await record_event(
        actor_id="alice",
        actor_role="admin",
        entity_type="superuser_credential",
        entity_id="cred-1",
        action="credential.rotated",
        after_state={"status": "SYNCING", "current_password": "nope"},
        request_id="req-1",
    )
    async with SessionLocal() as session:
        event = (await session.execute(select(AuditEvent))).scalar_one()
    assert event.action == "credential.rotated"
    assert event.outcome == "success"
    assert event.after_state == {"status": "SYNCING", "current_password": "[REDACTED]"}
    assert event.occurred_at.tzinfo is not None
