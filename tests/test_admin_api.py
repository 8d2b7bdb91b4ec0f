"""Tests for the Ledger admin API."""

import pytest

from expense_auth.ledger.events import get_event_bus
from tests.conftest import bearer_session


class TestAdminAuth:
    @pytest.mark.asyncio
    async def test_missing_key(self, client):
        response = await client.get("/admin/identities")
        assert response.status_code == 401
        assert response.json()["code"] == "admin_unauthorized"

    @pytest.mark.asyncio
    async def test_wrong_key(self, client):
        response = await client.get("/admin/identities", headers={"X-Admin-Key": "wrong"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_disabled_without_configured_key(self, client, admin_headers, reload_config):
        reload_config(ADMIN_KEY="")
        response = await client.get("/admin/identities", headers=admin_headers)
        assert response.status_code == 503
        assert response.json()["code"] == "admin_disabled"


class TestIdentityAdministration:
    @pytest.mark.asyncio
    async def test_add_and_list(self, client, admin_headers):
        response = await client.post(
            "/admin/identities",
            json={"email": " New@X.com ", "name": "New User"},
            headers=admin_headers,
        )
        assert response.status_code == 201
        created = response.json()
        assert created["email"] == "new@x.com"
        assert created["status"] == "active"
        assert created["has_pin"] is False
        assert created["revision"] == 1

        data = (await client.get("/admin/identities", headers=admin_headers)).json()
        assert data["count"] == 1
        assert data["identities"][0]["email"] == "new@x.com"

    @pytest.mark.asyncio
    async def test_add_duplicate(self, client, admin_headers, seed_identity):
        seed_identity("a@x.com")
        response = await client.post(
            "/admin/identities", json={"email": "A@x.com", "name": "A"}, headers=admin_headers
        )
        assert response.status_code == 409
        assert response.json()["code"] == "identity_exists"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"email": "not-an-email", "name": "A"},
            {"email": "a@x.com", "name": "   "},
            {"email": "a@x.com", "name": "A", "status": "banned"},
        ],
    )
    async def test_add_invalid(self, client, admin_headers, body):
        response = await client.post("/admin/identities", json=body, headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_suspend_bumps_revision_and_revokes_sessions(
        self, client, admin_headers, seed_identity
    ):
        seed_identity("a@x.com", pin="0000")
        headers = await bearer_session(client, "a@x.com")

        response = await client.patch(
            "/admin/identities/A@x.com", json={"status": "suspended"}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["status"] == "suspended"
        assert response.json()["revision"] == 3

        response = await client.get("/ledger/me", headers=headers)
        assert response.status_code == 401
        assert response.json()["code"] == "session_invalidated"

        # Suspended identity cannot log in again
        fresh = (await client.post("/auth/anonymous")).json()["token"]
        response = await client.post(
            "/auth/authorize", json={"email": "a@x.com"}, headers={"Authorization": f"Bearer {fresh}"}
        )
        assert response.json()["code"] == "suspended"

    @pytest.mark.asyncio
    async def test_rename(self, client, admin_headers, seed_identity):
        seed_identity("a@x.com", name="Old")
        response = await client.patch(
            "/admin/identities/a@x.com", json={"name": "New"}, headers=admin_headers
        )
        assert response.json()["name"] == "New"
        assert response.json()["revision"] == 2

    @pytest.mark.asyncio
    async def test_empty_update_rejected(self, client, admin_headers, seed_identity):
        seed_identity("a@x.com")
        response = await client.patch("/admin/identities/a@x.com", json={}, headers=admin_headers)
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_reset_pin(self, client, admin_headers, seed_identity, ledger):
        seed_identity("a@x.com", pin="0000")
        response = await client.post("/admin/identities/a@x.com/reset-pin", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["has_pin"] is False
        assert not ledger.get_identity("a@x.com").has_pin

        headers = await bearer_session(client)
        data = (await client.post("/auth/authorize", json={"email": "a@x.com"}, headers=headers)).json()
        assert data["has_pin"] is False

    @pytest.mark.asyncio
    async def test_delete(self, client, admin_headers, seed_identity):
        seed_identity("a@x.com")
        headers = await bearer_session(client, "a@x.com")

        response = await client.delete("/admin/identities/a@x.com", headers=admin_headers)
        assert response.status_code == 200
        assert response.json() == {"success": True, "email": "a@x.com"}

        response = await client.get("/auth/session", headers=headers)
        assert response.json()["code"] == "session_invalidated"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method,path",
        [
            ("PATCH", "/admin/identities/ghost@x.com"),
            ("POST", "/admin/identities/ghost@x.com/reset-pin"),
            ("DELETE", "/admin/identities/ghost@x.com"),
        ],
    )
    async def test_missing_identity(self, client, admin_headers, method, path):
        kwargs = {"json": {"name": "X"}} if method == "PATCH" else {}
        response = await client.request(method, path, headers=admin_headers, **kwargs)
        assert response.status_code == 404
        assert response.json()["code"] == "identity_not_found"

    @pytest.mark.asyncio
    async def test_write_publishes_event(self, client, admin_headers, seed_identity):
        seed_identity("a@x.com", pin="0000")
        subscription = get_event_bus().subscribe("a@x.com")

        await client.post("/admin/identities/a@x.com/reset-pin", headers=admin_headers)

        event = await subscription.get(timeout=1.0)
        subscription.close()
        assert event.type == "update"
        assert event.source == "admin"
        assert event.old.has_pin is True
        assert event.new.has_pin is False
        assert event.new.revision == event.old.revision + 1


class TestAuditLogs:
    @pytest.mark.asyncio
    async def test_admin_actions_audited(self, client, admin_headers, seed_identity):
        seed_identity("a@x.com")
        await client.patch("/admin/identities/a@x.com", json={"name": "B"}, headers=admin_headers)

        data = (await client.get("/admin/audit-logs?action=admin.", headers=admin_headers)).json()
        assert data["count"] == 1
        event = data["events"][0]
        assert event["action"] == "admin.identity.update"
        assert event["details"] == {"email": "a@x.com", "revision": 2}
        assert data["summary"]["all_time"]["success_count"] >= 1
