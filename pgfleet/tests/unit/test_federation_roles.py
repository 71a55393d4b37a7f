from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from pgfleet.domain.models import ControlPlaneIdentity, FederatedNode, FederationRequest
from pgfleet.persistence.db import SessionLocal
from pgfleet.services import federation as federation_service


async def _make_partner_of(session, *, principle_instance_id: str = "cp_principle") -> FederatedNode:
    # This instance becomes a PARTNER following a known principle peer.
    identity = await federation_service.get_or_create_identity(session)
    node = FederatedNode(
        instance_id=principle_instance_id,
        name="Principle Plane",
        domain="https://principle.test",
        role=federation_service.ROLE_PRINCIPLE,
        status=federation_service.NODE_STATUS_CONNECTED,
        api_key="cpf_principle",
    )
    session.add(node)
    federation_service._set_role(identity, federation_service.ROLE_PARTNER, principle_id=principle_instance_id)
    await session.commit()
    return node


async def _expire(request_id: str) -> None:
    async with SessionLocal() as session:
        request = await session.get(FederationRequest, request_id)
        request.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        await session.commit()


def test_key_and_instance_id_formats() -> None:
    api_key = federation_service.generate_api_key()
    assert api_key.startswith("cpf_") and len(api_key) == 68
    instance_id = federation_service.generate_instance_id()
    assert instance_id.startswith("cp_") and len(instance_id) == 35
    assert federation_service.mask_api_key(api_key) == api_key[:10] + "..."


@pytest.mark.asyncio
async def test_identity_is_created_once_as_standalone() -> None:
    async with SessionLocal() as session:
        first = await federation_service.get_or_create_identity(session)
    async with SessionLocal() as session:
        second = await federation_service.get_or_create_identity(session)
    assert first.instance_id == second.instance_id
    assert second.role == "STANDALONE"
    assert second.epoch == 1
    assert second.domain == "https://cp-local.test"
    payload = federation_service.identity_payload(second)
    assert payload["api_key"].endswith("...")


@pytest.mark.asyncio
async def test_role_change_bumps_epoch_only_when_role_changes() -> None:
    async with SessionLocal() as session:
        identity = await federation_service.get_or_create_identity(session)
        assert federation_service._set_role(identity, "PRINCIPLE", principle_id=None) is True
        assert identity.epoch == 2
        assert federation_service._set_role(identity, "PRINCIPLE", principle_id=None) is False
        assert identity.epoch == 2


@pytest.mark.asyncio
async def test_expired_promotion_is_acknowledged_exactly_once() -> None:
    async with SessionLocal() as session:
        node = await _make_partner_of(session)
        request, delivered = await federation_service.request_promotion(session, node_id=node.id)
        assert delivered is False
        assert request.epoch == 2
        request_id = request.id
        node_id = node.id
    await _expire(request_id)

    async with SessionLocal() as session:
        first = await federation_service.resolve_expired_promotions(session)
    async with SessionLocal() as session:
        second = await federation_service.resolve_expired_promotions(session)

    assert first == [request_id]
    assert second == []
    async with SessionLocal() as session:
        identity = await session.get(ControlPlaneIdentity, 1)
        request = await session.get(FederationRequest, request_id)
        node = await session.get(FederatedNode, node_id)
    assert identity.role == "PRINCIPLE"
    assert identity.principle_id is None
    assert identity.epoch == 3
    assert request.status == "ACKNOWLEDGED"
    assert request.responded_by == "timeout"
    assert node.role == "PARTNER"
    assert node.promotion_request_at is None


@pytest.mark.asyncio
async def test_stale_epoch_promotion_is_superseded() -> None:
    async with SessionLocal() as session:
        node = await _make_partner_of(session)
        request, _ = await federation_service.request_promotion(session, node_id=node.id)
        request_id = request.id
        # The principle changed hands after the request went out.
        identity = await federation_service.get_identity(session)
        federation_service._set_role(identity, "PARTNER", principle_id="cp_someone_else")
        await session.commit()
    await _expire(request_id)

    async with SessionLocal() as session:
        acknowledged = await federation_service.resolve_expired_promotions(session)
        assert acknowledged == []
    async with SessionLocal() as session:
        identity = await session.get(ControlPlaneIdentity, 1)
        request = await session.get(FederationRequest, request_id)
    assert identity.role == "PARTNER"
    assert identity.principle_id == "cp_someone_else"
    assert request.status == "REJECTED"
    assert request.responded_by == "superseded"


@pytest.mark.asyncio
async def test_late_accept_of_expired_promotion_is_refused() -> None:
    async with SessionLocal() as session:
        identity = await federation_service.get_or_create_identity(session)
        federation_service._set_role(identity, "PRINCIPLE", principle_id=None)
        await session.commit()
        request = await federation_service.receive_request(
            session,
            from_instance_id="cp_partner",
            from_instance_name="Partner",
            from_instance_domain="https://partner.test",
            request_type="PROMOTION",
            expires_at=datetime.now(timezone.utc) - timedelta(seconds=5),
            epoch=4,
        )
        with pytest.raises(HTTPException) as exc_info:
            await federation_service.respond_to_request(
                session,
                request_id=request.id,
                accept=True,
                responded_by="alice",
            )
    assert exc_info.value.status_code == 404
    assert exc_info.value.detail["code"] == "FEDERATION_REQUEST_NOT_FOUND"
    async with SessionLocal() as session:
        identity = await session.get(ControlPlaneIdentity, 1)
    assert identity.role == "PRINCIPLE"


@pytest.mark.asyncio
async def test_partnership_accept_makes_this_instance_principle() -> None:
    async with SessionLocal() as session:
        request = await federation_service.receive_request(
            session,
            from_instance_id="cp_remote",
            from_instance_name="Remote Plane",
            from_instance_domain="https://remote.test",
            request_type="partnership",
            message="let's federate",
            api_key="cpf_remote_key",
        )
        pending = await federation_service.list_pending_requests(session)
        assert [item.id for item in pending] == [request.id]

        result = await federation_service.respond_to_request(
            session,
            request_id=request.id,
            accept=True,
            responded_by="alice",
        )
        assert result["message"] == "Partnership accepted. You are now the Principle."
        assert result["identity"]["role"] == "PRINCIPLE"
        assert result["request"]["status"] == "ACKNOWLEDGED"
        assert "api_key" not in result["node"]

        with pytest.raises(HTTPException):
            await federation_service.respond_to_request(
                session,
                request_id=request.id,
                accept=False,
                responded_by="alice",
            )

    async with SessionLocal() as session:
        node = (
            await session.execute(select(FederatedNode).where(FederatedNode.instance_id == "cp_remote"))
        ).scalar_one()
    assert node.role == "PARTNER"
    assert node.status == "CONNECTED"
    assert node.api_key == "cpf_remote_key"
    assert node.sync_enabled is True


@pytest.mark.asyncio
async def test_reject_leaves_role_untouched() -> None:
    async with SessionLocal() as session:
        request = await federation_service.receive_request(
            session,
            from_instance_id="cp_remote",
            from_instance_name="Remote Plane",
            from_instance_domain="https://remote.test",
            request_type="PARTNERSHIP",
        )
        result = await federation_service.respond_to_request(
            session,
            request_id=request.id,
            accept=False,
            responded_by="alice",
        )
        identity = await federation_service.get_identity(session)
    assert result["message"] == "Request rejected"
    assert result["request"]["status"] == "REJECTED"
    assert identity.role == "STANDALONE"


@pytest.mark.asyncio
async def test_promote_partner_hands_over_the_principle_role() -> None:
    async with SessionLocal() as session:
        request = await federation_service.receive_request(
            session,
            from_instance_id="cp_remote",
            from_instance_name="Remote Plane",
            from_instance_domain="https://remote.test",
            request_type="PARTNERSHIP",
        )
        await federation_service.respond_to_request(session, request_id=request.id, accept=True, responded_by="alice")
        node = (
            await session.execute(select(FederatedNode).where(FederatedNode.instance_id == "cp_remote"))
        ).scalar_one()

        result = await federation_service.promote_partner(session, node_id=node.id)
        assert result["message"] == "Remote Plane has been promoted to Principle. You are now a Partner."
        assert result["identity"]["role"] == "PARTNER"
        assert result["identity"]["principle_id"] == "cp_remote"
        assert result["node"]["role"] == "PRINCIPLE"

        with pytest.raises(HTTPException) as exc_info:
            await federation_service.promote_partner(session, node_id=node.id)
    assert exc_info.value.status_code == 403
    assert exc_info.value.detail["code"] == "FEDERATION_ROLE_INVALID"


@pytest.mark.asyncio
async def test_standalone_cannot_request_promotion() -> None:
    async with SessionLocal() as session:
        with pytest.raises(HTTPException) as exc_info:
            await federation_service.request_promotion(session, node_id="missing")
    assert exc_info.value.detail["code"] == "FEDERATION_ROLE_INVALID"


@pytest.mark.asyncio
async def test_partnership_request_adds_one_placeholder_per_domain() -> None:
    async with SessionLocal() as session:
        first, delivered = await federation_service.send_partnership_request(
            session,
            target_domain=" https://peer.test ",
            message="hello",
        )
        await federation_service.send_partnership_request(session, target_domain="https://peer.test")
        nodes = list((await session.execute(select(FederatedNode))).scalars())
        pending = await federation_service.list_pending_requests(session)

    assert delivered is False
    assert first.request_type == "PARTNERSHIP"
    assert first.to_instance_id is None
    assert len(nodes) == 1
    assert nodes[0].instance_id.startswith("pending_")
    assert nodes[0].name == "Pending Connection"
    assert nodes[0].status == "PENDING"
    # Outgoing requests never show up as pending for this instance.
    assert pending == []


@pytest.mark.asyncio
async def test_disconnecting_the_principle_returns_to_standalone() -> None:
    async with SessionLocal() as session:
        node = await _make_partner_of(session)
        await federation_service.disconnect_node(session, node_id=node.id)
        identity = await federation_service.get_identity(session)
        remaining = list((await session.execute(select(FederatedNode))).scalars())
    assert identity.role == "STANDALONE"
    assert identity.principle_id is None
    assert remaining == []


@pytest.mark.asyncio
async def test_status_resolves_expired_promotions() -> None:
    async with SessionLocal() as session:
        node = await _make_partner_of(session)
        request, _ = await federation_service.request_promotion(session, node_id=node.id)
        request_id = request.id
    await _expire(request_id)

    async with SessionLocal() as session:
        status = await federation_service.get_federation_status(session, domain_hint="http://ignored")
    assert status["identity"]["role"] == "PRINCIPLE"
    assert status["federated_nodes"][0]["role"] == "PARTNER"
    assert status["current_domain"] == "https://cp-local.test"
