"""
Tests for Google access token refresh.
"""
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from callos.models import GoogleIntegration
from callos.services.encryption import decrypt_api_key, encrypt_api_key
from callos.services.google_oauth import get_valid_access_token, should_refresh

TOKEN_URL = "https://oauth2.googleapis.com/token"


async def _integration(db_session, expires_in: timedelta = None) -> GoogleIntegration:
    integration = GoogleIntegration(
        user_id="user-1",
        organization_id="org-1",
        google_email="rep@acme.test",
        gmail_enabled=True,
        access_token_encrypted=encrypt_api_key("stored-access"),
        refresh_token_encrypted=encrypt_api_key("stored-refresh"),
        token_expires_at=datetime.now(timezone.utc) + expires_in if expires_in is not None else None,
    )
    db_session.add(integration)
    await db_session.commit()
    return integration


@pytest.mark.unit
class TestShouldRefresh:

    def test_expiring_in_four_minutes_refreshes(self):
        assert should_refresh(datetime.now(timezone.utc) + timedelta(minutes=4)) is True

    def test_expiring_in_ten_minutes_does_not_refresh(self):
        assert should_refresh(datetime.now(timezone.utc) + timedelta(minutes=10)) is False

    def test_unknown_expiry_refreshes(self):
        assert should_refresh(None) is True

    def test_naive_expiry_treated_as_utc(self):
        naive = (datetime.now(timezone.utc) + timedelta(hours=1)).replace(tzinfo=None)
        assert should_refresh(naive) is False


@pytest.mark.unit
class TestGetValidAccessToken:

    async def test_fresh_token_returned_without_refresh(self, db_session, http, upstream):
        integration = await _integration(db_session, timedelta(minutes=10))

        token, refreshed = await get_valid_access_token(db_session, http, integration)

        assert token == "stored-access"
        assert refreshed is False
        assert upstream.calls(TOKEN_URL) == []

    async def test_expiring_token_is_refreshed_and_stored(self, db_session, http, upstream):
        upstream.add("POST", TOKEN_URL, httpx.Response(200, json={"access_token": "new-access", "expires_in": 3600}))
        integration = await _integration(db_session, timedelta(minutes=4))

        token, refreshed = await get_valid_access_token(db_session, http, integration)

        assert token == "new-access"
        assert refreshed is True
        assert decrypt_api_key(integration.access_token_encrypted) == "new-access"
        assert should_refresh(integration.token_expires_at) is False

        form = upstream.calls(TOKEN_URL)[0].content.decode()
        assert "grant_type=refresh_token" in form
        assert "refresh_token=stored-refresh" in form

    async def test_failed_refresh_falls_back_to_stored_token(self, db_session, http, upstream):
        upstream.add("POST", TOKEN_URL, httpx.Response(400, json={"error": "invalid_grant"}))
        integration = await _integration(db_session, timedelta(minutes=1))

        token, refreshed = await get_valid_access_token(db_session, http, integration)

        assert token == "stored-access"
        assert refreshed is False

    async def test_non_json_refresh_response_falls_back(self, db_session, http, upstream):
        upstream.add("POST", TOKEN_URL, httpx.Response(200, text="<html>bad gateway</html>"))
        integration = await _integration(db_session, timedelta(minutes=1))

        token, refreshed = await get_valid_access_token(db_session, http, integration)

        assert (token, refreshed) == ("stored-access", False)
        assert decrypt_api_key(integration.access_token_encrypted) == "stored-access"

    @pytest.mark.parametrize("expires_in", ["soon", [3600], {"s": 1}])
    async def test_invalid_expires_in_falls_back(self, db_session, http, upstream, expires_in):
        upstream.add("POST", TOKEN_URL, httpx.Response(200, json={"access_token": "new-access", "expires_in": expires_in}))
        integration = await _integration(db_session, timedelta(minutes=1))

        token, refreshed = await get_valid_access_token(db_session, http, integration)

        assert (token, refreshed) == ("stored-access", False)

    async def test_numeric_string_expires_in_accepted(self, db_session, http, upstream):
        upstream.add("POST", TOKEN_URL, httpx.Response(200, json={"access_token": "new-access", "expires_in": "3599"}))
        integration = await _integration(db_session, timedelta(minutes=1))

        token, refreshed = await get_valid_access_token(db_session, http, integration)

        assert (token, refreshed) == ("new-access", True)


@pytest.mark.unit
class TestRefreshGoogleTokenEndpoint:

    async def test_requires_service_key(self, client):
        response = await client.post(
            "/refresh-google-token",
            json={"user_id": "user-1", "organization_id": "org-1"},
            headers={"Authorization": "Bearer someone-else"},
        )
        assert response.status_code == 401
        assert response.json()["success"] is False

    async def test_missing_integration_is_404(self, client, service_headers):
        response = await client.post(
            "/refresh-google-token",
            json={"user_id": "user-1", "organization_id": "org-1"},
            headers=service_headers,
        )
        assert response.status_code == 404

    async def test_returns_refreshed_token(self, client, db_session, upstream, service_headers):
        upstream.add("POST", TOKEN_URL, httpx.Response(200, json={"access_token": "new-access", "expires_in": 3600}))
        await _integration(db_session, timedelta(minutes=2))

        response = await client.post(
            "/refresh-google-token",
            json={"user_id": "user-1", "organization_id": "org-1"},
            headers=service_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["access_token"] == "new-access"
        assert data["refreshed"] is True
        assert data["expires_at"]
