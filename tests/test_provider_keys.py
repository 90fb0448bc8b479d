"""
Tests for Fireflies and Telnyx key storage.
"""
import httpx
import pytest
from sqlalchemy import select

from callos.models import FirefliesCredential, TelnyxCredential
from callos.services.encryption import decrypt_api_key

FIREFLIES_URL = "https://api.fireflies.ai/graphql"
TELNYX_BALANCE_URL = "https://api.telnyx.com/v2/balance"


@pytest.mark.unit
class TestSaveFirefliesKey:

    async def test_saves_own_key(self, client, db_session, upstream, add_member, login_as):
        await add_member("user-1")
        login_as("user-1")
        upstream.add("POST", FIREFLIES_URL, httpx.Response(200, json={
            "data": {"user": {"user_id": "ff-u", "email": "rep@acme.test", "name": "Rep"}},
        }))

        response = await client.post("/save-fireflies-key", json={
            "apiKey": "ff-key", "userId": "user-1", "organizationId": "org-1",
        })

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "user": {"user_id": "ff-u", "email": "rep@acme.test", "name": "Rep"},
        }
        db_session.expire_all()
        credential = (await db_session.execute(select(FirefliesCredential))).scalar_one()
        assert decrypt_api_key(credential.api_key_encrypted) == "ff-key"
        assert upstream.calls(FIREFLIES_URL)[0].headers["Authorization"] == "Bearer ff-key"

    async def test_second_save_replaces_key(self, client, db_session, upstream, add_member, login_as):
        await add_member("user-1")
        login_as("user-1")
        upstream.add("POST", FIREFLIES_URL, httpx.Response(200, json={"data": {"user": {"user_id": "ff-u"}}}))

        for key in ("first", "second"):
            await client.post("/save-fireflies-key", json={
                "apiKey": key, "userId": "user-1", "organizationId": "org-1",
            })

        db_session.expire_all()
        [credential] = (await db_session.execute(select(FirefliesCredential))).scalars().all()
        assert decrypt_api_key(credential.api_key_encrypted) == "second"

    async def test_invalid_key_is_400(self, client, db_session, upstream, add_member, login_as):
        await add_member("user-1")
        login_as("user-1")
        upstream.add("POST", FIREFLIES_URL, httpx.Response(200, json={
            "errors": [{"message": "Invalid API key"}], "data": None,
        }))

        response = await client.post("/save-fireflies-key", json={
            "apiKey": "bad", "userId": "user-1", "organizationId": "org-1",
        })

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid API key"
        assert (await db_session.execute(select(FirefliesCredential))).scalars().all() == []

    async def test_member_cannot_save_for_another_user(self, client, upstream, add_member, login_as):
        await add_member("user-1")
        login_as("user-1")

        response = await client.post("/save-fireflies-key", json={
            "apiKey": "k", "userId": "user-2", "organizationId": "org-1",
        })

        assert response.status_code == 403
        assert upstream.requests == []

    async def test_missing_fields(self, client, login_as):
        login_as("user-1")
        response = await client.post("/save-fireflies-key", json={"apiKey": "k"})

        assert response.status_code == 400
        assert response.json()["error"] == "Missing required fields: apiKey, userId, organizationId"


@pytest.mark.unit
class TestSaveTelnyxKey:

    async def test_admin_saves_for_member(self, client, db_session, upstream, add_member, login_as):
        await add_member("admin-1", role="admin")
        login_as("admin-1")
        upstream.add("GET", TELNYX_BALANCE_URL, httpx.Response(200, json={"data": {"balance": "10.00"}}))

        response = await client.post("/save-telnyx-key", json={
            "apiKey": "tx-key", "userId": "user-1", "organizationId": "org-1",
        })

        assert response.status_code == 200
        assert response.json()["success"] is True
        db_session.expire_all()
        credential = (await db_session.execute(select(TelnyxCredential))).scalar_one()
        assert credential.user_id == "user-1"
        assert decrypt_api_key(credential.api_key_encrypted) == "tx-key"

    async def test_rejected_key_is_400(self, client, upstream, add_member, login_as):
        await add_member("user-1")
        login_as("user-1")
        upstream.add("GET", TELNYX_BALANCE_URL, httpx.Response(401, json={"errors": []}))

        response = await client.post("/save-telnyx-key", json={
            "apiKey": "bad", "userId": "user-1", "organizationId": "org-1",
        })

        assert response.status_code == 400
