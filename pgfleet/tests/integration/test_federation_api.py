from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from pgfleet.apps.api.main import create_app
from pgfleet.core.config import get_settings


ADMIN = {"X-Actor-Id": "alice", "X-Actor-Role": "admin"}
VIEWER = {"X-Actor-Id": "victor", "X-Actor-Role": "viewer"}


def _build_client() -> ASGITransport:
    get_settings.cache_clear()
    return ASGITransport(app=create_app())


async def _own_credentials(client: AsyncClient) -> dict[str, str]:
    status = await client.get("/v1/federation", headers=VIEWER)
    instance_id = status.json()["data"]["identity"]["instance_id"]
    regenerated = await client.post("/v1/federation/identity/regenerate-api-key", headers=ADMIN)
    return {
        "X-Federation-Api-Key": regenerated.json()["data"]["api_key"],
        "X-Federation-Instance-Id": instance_id,
    }


@pytest.mark.asyncio
async def test_status_masks_api_key_and_reports_standalone() -> None:
    async with AsyncClient(transport=_build_client(), base_url="http://test") as client:
        response = await client.get("/v1/federation", headers=VIEWER)
        renamed = await client.post("/v1/federation/identity", headers=ADMIN, json={"name": "East Plane"})
        viewer_rename = await client.post("/v1/federation/identity", headers=VIEWER, json={"name": "x"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["identity"]["role"] == "STANDALONE"
    assert data["identity"]["api_key"].endswith("...")
    assert data["federated_nodes"] == []
    assert data["current_domain"] == "https://cp-local.test"
    assert renamed.json()["data"]["name"] == "East Plane"
    assert viewer_rename.status_code == 403


@pytest.mark.asyncio
async def test_inbound_partnership_request_and_accept() -> None:
    async with AsyncClient(transport=_build_client(), base_url="http://test") as client:
        inbound = await client.post(
            "/v1/federation/inbound-requests",
            json={
                "from_instance_id": "cp_remote",
                "from_instance_name": "Remote Plane",
                "from_instance_domain": "https://remote.test",
                "request_type": "PARTNERSHIP",
                "message": "federate?",
                "api_key": "cpf_remote_key",
            },
        )
        assert inbound.status_code == 201
        request_id = inbound.json()["data"]["id"]
        assert "api_key" not in inbound.json()["data"]

        pending = await client.get("/v1/federation/requests/pending", headers=VIEWER)
        assert [item["id"] for item in pending.json()["data"]["items"]] == [request_id]

        accepted = await client.post(
            f"/v1/federation/requests/{request_id}/respond",
            headers=ADMIN,
            json={"accept": True},
        )
        assert accepted.status_code == 200
        assert accepted.json()["data"]["identity"]["role"] == "PRINCIPLE"

        repeat = await client.post(
            f"/v1/federation/requests/{request_id}/respond",
            headers=ADMIN,
            json={"accept": True},
        )
        assert repeat.status_code == 404
        assert repeat.json()["error"]["code"] == "FEDERATION_REQUEST_NOT_FOUND"

        status = await client.get("/v1/federation", headers=VIEWER)
        nodes = status.json()["data"]["federated_nodes"]
        assert [(node["instance_id"], node["role"]) for node in nodes] == [("cp_remote", "PARTNER")]

        toggled = await client.post(
            f"/v1/federation/nodes/{nodes[0]['id']}/sync",
            headers=ADMIN,
            json={"enabled": False},
        )
        assert toggled.json()["data"]["sync_enabled"] is False

        # The partner authenticates with the key it sent in its request.
        heartbeat = await client.post(
            "/v1/federation/sync/heartbeat",
            headers={"X-Federation-Api-Key": "cpf_remote_key", "X-Federation-Instance-Id": "cp_remote"},
        )
        assert heartbeat.status_code == 200
        assert heartbeat.json()["data"]["role"] == "PRINCIPLE"


@pytest.mark.asyncio
async def test_sync_endpoints_require_federation_credentials() -> None:
    async with AsyncClient(transport=_build_client(), base_url="http://test") as client:
        anonymous = await client.get("/v1/federation/sync")
        own = await _own_credentials(client)
        heartbeat = await client.get("/v1/federation/sync", headers=own)
        full_sync = await client.get("/v1/federation/sync", params={"action": "full-sync"}, headers=own)
        bogus = await client.get("/v1/federation/sync", params={"action": "explode"}, headers=own)

    assert anonymous.status_code == 401
    assert anonymous.json()["error"]["code"] == "FEDERATION_AUTH_INVALID"
    assert heartbeat.status_code == 200
    assert heartbeat.json()["data"]["status"] == "ok"
    # A standalone instance has no snapshot to serve.
    assert full_sync.status_code == 403
    assert bogus.status_code == 400


@pytest.mark.asyncio
async def test_principle_serves_full_sync_after_accepting_partner() -> None:
    async with AsyncClient(transport=_build_client(), base_url="http://test") as client:
        inbound = await client.post(
            "/v1/federation/inbound-requests",
            json={
                "from_instance_id": "cp_remote",
                "from_instance_name": "Remote Plane",
                "from_instance_domain": "https://remote.test",
                "request_type": "PARTNERSHIP",
                "api_key": "cpf_remote_key",
            },
        )
        await client.post(
            f"/v1/federation/requests/{inbound.json()['data']['id']}/respond",
            headers=ADMIN,
            json={"accept": True},
        )
        await client.post("/v1/clusters", headers=ADMIN, json={"name": "orders"})
        full_sync = await client.get(
            "/v1/federation/sync",
            params={"action": "full-sync"},
            headers={"X-Federation-Api-Key": "cpf_remote_key", "X-Federation-Instance-Id": "cp_remote"},
        )

    assert full_sync.status_code == 200
    data = full_sync.json()["data"]
    assert [cluster["name"] for cluster in data["clusters"]] == ["orders"]
    assert data["nodes"] == []


@pytest.mark.asyncio
async def test_partnership_request_and_request_cleanup() -> None:
    async with AsyncClient(transport=_build_client(), base_url="http://test") as client:
        sent = await client.post(
            "/v1/federation/partnership-requests",
            headers=ADMIN,
            json={"target_domain": "https://peer.test", "message": "hi"},
        )
        assert sent.status_code == 201
        assert sent.json()["data"]["delivered"] is False
        request_id = sent.json()["data"]["request"]["id"]

        promotion = await client.post("/v1/federation/nodes/unknown/request-promotion", headers=ADMIN)
        assert promotion.status_code == 400
        assert promotion.json()["error"]["code"] == "FEDERATION_ROLE_INVALID"

        deleted = await client.delete(f"/v1/federation/requests/{request_id}", headers=ADMIN)
        missing = await client.delete(f"/v1/federation/requests/{request_id}", headers=ADMIN)

        status = await client.get("/v1/federation", headers=VIEWER)
        placeholder = status.json()["data"]["federated_nodes"][0]
        disconnected = await client.delete(f"/v1/federation/nodes/{placeholder['id']}", headers=ADMIN)
        after = await client.get("/v1/federation", headers=VIEWER)

    assert deleted.status_code == 204
    assert missing.status_code == 404
    assert placeholder["status"] == "PENDING"
    assert disconnected.status_code == 204
    assert after.json()["data"]["federated_nodes"] == []
