from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from pgfleet.domain.models import CredentialAlert, CredentialPropagation
from pgfleet.persistence.db import SessionLocal
from pgfleet.services import credentials as credential_service
from pgfleet.tests.utils.fake_node_client import FakeNodeClient
from pgfleet.tests.utils.fleet import seed_cluster


def test_generated_password_uses_configured_length_and_alphabet() -> None:
    password = credential_service.generate_password()
    assert len(password) == 32
    assert set(password) <= set(credential_service.PASSWORD_ALPHABET)
    assert credential_service.generate_password() != password


def test_history_labels() -> None:
    assert credential_service.history_label(0) == "current"
    assert credential_service.history_label(3) == "history_3"


@pytest.mark.asyncio
async def test_initialize_twice_conflicts() -> None:
    async with SessionLocal() as session:
        credential = await credential_service.initialize_credential(session, actor_id="alice")
        assert credential.status == "ACTIVE"
        assert credential.password_history == []
        assert credential.next_rotation_at - credential.last_rotated_at == timedelta(days=45)
        with pytest.raises(HTTPException) as exc_info:
            await credential_service.initialize_credential(session)
    assert exc_info.value.detail["code"] == "CREDENTIAL_ALREADY_INITIALIZED"


@pytest.mark.asyncio
async def test_rotate_requires_initialized_credential() -> None:
    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as exc_info:
            await credential_service.rotate_credential(session)
    assert exc_info.value.detail["code"] == "CREDENTIAL_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_history_keeps_six_most_recent_passwords_newest_first() -> None:
    async with SessionLocal() as session:
        credential = await credential_service.initialize_credential(session)
        previous: list[str] = []
        for _ in range(7):
            previous.insert(0, credential.current_password)
            credential = await credential_service.rotate_credential(session)

    assert len(credential.password_history) == 6
    assert credential.password_history == previous[:6]
    assert credential.current_password not in credential.password_history
    assert credential.status == "SYNCING"
    assert credential_service.credential_payload(credential)["password_history_count"] == 6


@pytest.mark.asyncio
async def test_propagation_with_current_password_changes_nothing() -> None:
    client = FakeNodeClient()
    async with SessionLocal() as session:
        _, _, (replica,) = await seed_cluster(session)
        credential = await credential_service.initialize_credential(session)
        client.node(replica.host).password = credential.current_password

        result = await credential_service.propagate_to_node(session, replica.id, client=client)

    assert result.status == "SUCCESS"
    assert result.password_used == "current"
    assert client.password_changes == []


@pytest.mark.asyncio
async def test_propagation_falls_back_to_history_and_updates_node() -> None:
    client = FakeNodeClient()
    async with SessionLocal() as session:
        _, _, (replica,) = await seed_cluster(session)
        credential = await credential_service.initialize_credential(session)
        oldest = credential.current_password
        await credential_service.rotate_credential(session)
        credential = await credential_service.rotate_credential(session)
        client.node(replica.host).password = oldest

        result = await credential_service.propagate_to_node(session, replica.id, client=client)

        row = (
            await session.execute(select(CredentialPropagation).where(CredentialPropagation.node_id == replica.id))
        ).scalar_one()

    assert result.status == "SUCCESS"
    assert result.password_used == "history_2"
    assert client.password_changes == [(replica.host, credential.username, credential.current_password)]
    assert client.node(replica.host).password == credential.current_password
    assert row.status == "SUCCESS"
    assert row.success_at is not None


@pytest.mark.asyncio
async def test_unknown_password_raises_single_reenrollment_alert() -> None:
    client = FakeNodeClient()
    async with SessionLocal() as session:
        _, _, (replica,) = await seed_cluster(session)
        await credential_service.initialize_credential(session)
        client.node(replica.host).password = "set-by-someone-else"

        first = await credential_service.propagate_to_node(session, replica.id, client=client)
        second = await credential_service.propagate_to_node(session, replica.id, client=client)

        alerts = list(
            (await session.execute(select(CredentialAlert).where(CredentialAlert.node_id == replica.id))).scalars()
        )
        credential = await credential_service.get_credential(session)

    assert first.status == second.status == "NEEDS_REENROLLMENT"
    assert first.error_message == credential_service.REENROLLMENT_MESSAGE
    assert len(alerts) == 1
    assert alerts[0].alert_type == "REENROLLMENT_REQUIRED"
    assert credential.status == "NEEDS_REENROLLMENT"


@pytest.mark.asyncio
async def test_resolved_alert_allows_a_new_one() -> None:
    client = FakeNodeClient()
    async with SessionLocal() as session:
        _, _, (replica,) = await seed_cluster(session)
        await credential_service.initialize_credential(session)
        client.node(replica.host).password = "unknown"
        await credential_service.propagate_to_node(session, replica.id, client=client)
        alert = (await session.execute(select(CredentialAlert))).scalar_one()

        resolved = await credential_service.resolve_credential_alert(session, alert.id, resolved_by="alice")
        assert resolved.resolved is True
        assert resolved.resolved_by == "alice"

        await credential_service.propagate_to_node(session, replica.id, client=client)
        alerts = list((await session.execute(select(CredentialAlert).order_by(CredentialAlert.created_at))).scalars())
    assert [item.resolved for item in alerts] == [True, False]


@pytest.mark.asyncio
async def test_propagate_all_reports_in_node_id_order() -> None:
    client = FakeNodeClient()
    async with SessionLocal() as session:
        _, primary, replicas = await seed_cluster(session, replicas=3)
        credential = await credential_service.initialize_credential(session)
        client.node(primary.host).password = credential.current_password
        client.node(replicas[0].host).password = credential.current_password
        client.node(replicas[1].host).password = "unknown"
        client.node(replicas[2].host).reachable = False

        result = await credential_service.propagate_all(session, client=client)

    node_ids = [item["node_id"] for item in result["results"]]
    assert node_ids == sorted(node_ids)
    assert result["summary"] == {"total": 4, "successful": 2, "failed": 0, "needs_reenrollment": 2}
    assert result["status"] == "NEEDS_REENROLLMENT"


@pytest.mark.asyncio
async def test_repeated_propagate_all_keeps_one_open_alert() -> None:
    client = FakeNodeClient()
    async with SessionLocal() as session:
        _, primary, (replica,) = await seed_cluster(session)
        credential = await credential_service.initialize_credential(session)
        client.node(primary.host).password = credential.current_password
        client.node(replica.host).password = "set-by-someone-else"

        first = await credential_service.propagate_all(session, client=client)
        second = await credential_service.propagate_all(session, client=client)
        alerts = list((await session.execute(select(CredentialAlert))).scalars())

    assert first["summary"]["needs_reenrollment"] == second["summary"]["needs_reenrollment"] == 1
    assert len(alerts) == 1
    assert alerts[0].node_id == replica.id
    assert alerts[0].resolved is False


@pytest.mark.asyncio
async def test_auto_rotate_only_when_due_unless_forced() -> None:
    async with SessionLocal() as session:
        missing = await credential_service.auto_rotate(session)
        assert missing["rotated"] is False

        credential = await credential_service.initialize_credential(session)
        not_due = await credential_service.auto_rotate(session)
        assert not_due["rotated"] is False
        assert "0/45" in not_due["reason"]

        forced = await credential_service.auto_rotate(session, force=True)
        assert forced["rotated"] is True
        assert forced["history_count"] == 1

        credential.last_rotated_at = credential.last_rotated_at - timedelta(days=46)
        await session.commit()
        check = await credential_service.check_rotation(session)
        assert check["rotation_needed"] is True
        due = await credential_service.auto_rotate(session)
        assert due["rotated"] is True
        assert due["reason"] == "Scheduled rotation"
