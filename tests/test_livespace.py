"""
Tests for the Livespace client and its signature schemes.
"""
import hashlib
import json
from urllib.parse import parse_qs

import httpx
import pytest

from callos.exceptions import ConfigurationError, LivespaceAPIError
from callos.services.livespace import (
    LegacySignatureStrategy,
    SessionTokenStrategy,
    build_strategy,
    normalize_domain,
)

DOMAIN = "https://acme.livespace.io"
TOKEN_URL = f"{DOMAIN}/api/public/json/_Api/auth_call/_api_method/getToken"
USER_INFO_URL = f"{DOMAIN}/api/public/json/Default/User_getInfo"


def _form(request: httpx.Request) -> dict:
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


@pytest.mark.unit
class TestBuildStrategy:

    def test_domain_is_normalized(self):
        assert normalize_domain(" acme.livespace.io/ ") == DOMAIN
        assert normalize_domain("http://crm.local/") == "http://crm.local"

    def test_session_is_default_variant(self):
        strategy = build_strategy("acme.livespace.io", "key", "secret")
        assert isinstance(strategy, SessionTokenStrategy)
        assert strategy.domain == DOMAIN

    def test_legacy_variant(self):
        assert isinstance(build_strategy(DOMAIN, "key", "secret", "legacy"), LegacySignatureStrategy)

    def test_missing_secret_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            build_strategy(DOMAIN, "key", None)

    def test_unknown_variant_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            build_strategy(DOMAIN, "key", "secret", "oauth")


@pytest.mark.unit
class TestSessionTokenStrategy:

    async def test_call_signs_with_token(self, http, upstream):
        upstream.add("POST", TOKEN_URL, httpx.Response(200, json={
            "status": True,
            "result": {"token": "tok-9", "session_id": "sess-3"},
        }))
        upstream.add("POST", USER_INFO_URL, httpx.Response(200, json={
            "status": True,
            "result": {"email": "owner@acme.test", "name": "Owner"},
        }))
        strategy = SessionTokenStrategy(DOMAIN, "key-1", "secret-1")

        data = await strategy.call(http, "Default", "User_getInfo", {"filters": {"active": True}, "limit": "5"})

        assert data["result"]["email"] == "owner@acme.test"
        form = _form(upstream.calls(USER_INFO_URL)[0])
        assert form["_api_auth"] == "key"
        assert form["_api_key"] == "key-1"
        assert form["_api_session"] == "sess-3"
        assert form["_api_sha"] == hashlib.sha1(b"key-1tok-9secret-1").hexdigest()
        assert form["filters"] == '{"active":true}'
        assert form["limit"] == "5"

    async def test_token_nested_under_data(self, http, upstream):
        upstream.add("POST", TOKEN_URL, httpx.Response(200, json={
            "status": True,
            "data": {"token": "tok-old", "session_id": "sess-old"},
        }))
        strategy = SessionTokenStrategy(DOMAIN, "key", "secret")

        assert await strategy.get_token(http) == ("tok-old", "sess-old")

    async def test_status_false_stops_before_method_call(self, http, upstream):
        upstream.add("POST", TOKEN_URL, httpx.Response(200, json={"status": False, "result": 4}))
        strategy = SessionTokenStrategy(DOMAIN, "bad-key", "secret")

        with pytest.raises(LivespaceAPIError) as exc_info:
            await strategy.call(http, "Default", "User_getInfo", {})

        assert exc_info.value.code == 4
        assert len(upstream.requests) == 1

    async def test_missing_session_id_raises(self, http, upstream):
        upstream.add("POST", TOKEN_URL, httpx.Response(200, json={"status": True, "result": {"token": "t"}}))

        with pytest.raises(LivespaceAPIError):
            await SessionTokenStrategy(DOMAIN, "key", "secret").get_token(http)

    async def test_error_object_on_200_raises(self, http, upstream):
        upstream.add("POST", TOKEN_URL, httpx.Response(200, json={
            "status": True,
            "result": {"token": "t", "session_id": "s"},
        }))
        upstream.add("POST", USER_INFO_URL, httpx.Response(200, json={
            "error": {"message": "Access denied", "code": 403},
        }))

        with pytest.raises(LivespaceAPIError) as exc_info:
            await SessionTokenStrategy(DOMAIN, "key", "secret").call(http, "Default", "User_getInfo")

        assert "Access denied" in exc_info.value.message
        assert exc_info.value.code == 403

    async def test_http_error_keeps_upstream_status(self, http, upstream):
        upstream.add("POST", TOKEN_URL, httpx.Response(503, text="maintenance"))

        with pytest.raises(LivespaceAPIError) as exc_info:
            await SessionTokenStrategy(DOMAIN, "key", "secret").get_token(http)

        assert exc_info.value.upstream_status == 503


@pytest.mark.unit
class TestLegacySignatureStrategy:

    async def test_headers_carry_body_signature(self, http, upstream):
        upstream.add("POST", USER_INFO_URL, httpx.Response(200, json={"status": True, "result": {"email": "x"}}))
        strategy = LegacySignatureStrategy(DOMAIN, "key-1", "secret-1")

        await strategy.call(http, "Default", "User_getInfo", {"id": 7})

        request = upstream.calls(USER_INFO_URL)[0]
        body = request.content.decode()
        assert json.loads(body) == {"id": 7}
        assert request.headers["X-Api-Key"] == "key-1"
        assert request.headers["X-Api-Signature"] == hashlib.sha1(f"key-1secret-1{body}".encode()).hexdigest()
        assert upstream.calls(TOKEN_URL) == []
