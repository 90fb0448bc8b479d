"""
Tests for the CRM facade, proxies and credential storage.
"""
import httpx
import pytest
from sqlalchemy import select

from callos.exceptions import ConfigurationError, NotFoundError
from callos.models import CrmCredentials, CrmIntegration
from callos.services.crm_client import LIVESPACE, load_connection
from callos.services.encryption import decrypt_api_key, encrypt_api_key

PIPEDRIVE_API = "https://api.pipedrive.com/v1"
LS_DOMAIN = "https://acme.livespace.io"
LS_TOKEN_URL = f"{LS_DOMAIN}/api/public/json/_Api/auth_call/_api_method/getToken"
LS_USER_INFO_URL = f"{LS_DOMAIN}/api/public/json/Default/User_getInfo"


@pytest.fixture
async def pipedrive(db_session):
    db_session.add_all([
        CrmIntegration(id="pd-1", organization_id="org-1", platform="pipedrive", status="connected"),
        CrmCredentials(integration_id="pd-1", api_key_encrypted=encrypt_api_key("pd-key")),
    ])
    await db_session.commit()


@pytest.fixture
async def livespace_pending(db_session):
    db_session.add(CrmIntegration(id="ls-1", organization_id="org-1", platform="livespace", status="pending"))
    await db_session.commit()


@pytest.mark.unit
class TestLoadConnection:

    async def test_missing_credentials(self, db_session, livespace_pending):
        integration = await db_session.get(CrmIntegration, "ls-1")
        with pytest.raises(NotFoundError):
            await load_connection(db_session, integration)

    async def test_livespace_without_secret_is_configuration_error(self, db_session, livespace_pending):
        db_session.add(CrmCredentials(integration_id="ls-1", api_key_encrypted=encrypt_api_key("k"), domain=LS_DOMAIN))
        await db_session.commit()
        integration = await db_session.get(CrmIntegration, "ls-1")

        with pytest.raises(ConfigurationError):
            await load_connection(db_session, integration)

    async def test_livespace_connection(self, db_session, livespace_pending):
        db_session.add(CrmCredentials(
            integration_id="ls-1",
            api_key_encrypted=encrypt_api_key("k"),
            api_secret_encrypted=encrypt_api_key("s"),
            domain=LS_DOMAIN,
            signature_variant="legacy",
        ))
        await db_session.commit()
        integration = await db_session.get(CrmIntegration, "ls-1")

        connection = await load_connection(db_session, integration)

        assert connection.platform == LIVESPACE
        assert (connection.api_key, connection.api_secret) == ("k", "s")
        assert connection.signature_variant == "legacy"


@pytest.mark.unit
class TestPipedriveProxy:

    async def test_admin_can_proxy(self, client, upstream, pipedrive, add_member, login_as):
        await add_member("admin-1", role="admin")
        login_as("admin-1")
        upstream.add("GET", f"{PIPEDRIVE_API}/deals/7", httpx.Response(200, json={"success": True, "data": {"id": 7}}))

        response = await client.post("/pipedrive-proxy", json={"integration_id": "pd-1", "endpoint": "/deals/7"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "data": {"id": 7}}
        [request] = upstream.calls(f"{PIPEDRIVE_API}/deals/7")
        assert request.url.params["api_token"] == "pd-key"

    async def test_member_is_forbidden(self, client, upstream, pipedrive, add_member, login_as):
        await add_member("member-1", role="member")
        login_as("member-1")

        response = await client.post("/pipedrive-proxy", json={"integration_id": "pd-1", "endpoint": "/deals/7"})

        assert response.status_code == 403
        assert upstream.requests == []

    async def test_admin_of_other_org_is_forbidden(self, client, pipedrive, add_member, login_as):
        await add_member("admin-2", organization_id="org-2", role="admin")
        login_as("admin-2")

        response = await client.post("/pipedrive-proxy", json={"integration_id": "pd-1", "endpoint": "/deals"})
        assert response.status_code == 403

    async def test_upstream_error_is_502(self, client, upstream, pipedrive, add_member, login_as):
        await add_member("owner-1", role="owner")
        login_as("owner-1")
        upstream.add("POST", f"{PIPEDRIVE_API}/deals", httpx.Response(401, json={"success": False}))

        response = await client.post(
            "/pipedrive-proxy",
            json={"integration_id": "pd-1", "endpoint": "/deals", "method": "POST", "body": {"title": "x"}},
        )
        assert response.status_code == 502

    async def test_missing_parameters(self, client, add_member, login_as):
        login_as("admin-1")
        response = await client.post("/pipedrive-proxy", json={"endpoint": "/deals"})
        assert response.status_code == 400

    async def test_unknown_integration(self, client, login_as):
        login_as("admin-1")
        response = await client.post("/pipedrive-proxy", json={"integration_id": "nope", "endpoint": "/deals"})
        assert response.status_code == 404


@pytest.mark.unit
class TestLivespaceProxy:

    async def test_misconfigured_credentials_are_400(self, client, db_session, livespace_pending, add_member,
                                                     login_as, upstream):
        db_session.add(CrmCredentials(integration_id="ls-1", api_key_encrypted=encrypt_api_key("k")))
        await db_session.commit()
        await add_member("admin-1", role="admin")
        login_as("admin-1")

        response = await client.post(
            "/livespace-proxy",
            json={"integration_id": "ls-1", "module": "Deal", "method": "getAll"},
        )

        assert response.status_code == 400
        assert upstream.requests == []

    async def test_platform_mismatch(self, client, pipedrive, add_member, login_as):
        await add_member("admin-1", role="admin")
        login_as("admin-1")

        response = await client.post(
            "/livespace-proxy",
            json={"integration_id": "pd-1", "module": "Deal", "method": "getAll"},
        )
        assert response.status_code == 400

    async def test_logical_error_code_surfaces(self, client, db_session, livespace_pending, add_member,
                                               login_as, upstream):
        db_session.add(CrmCredentials(
            integration_id="ls-1",
            api_key_encrypted=encrypt_api_key("k"),
            api_secret_encrypted=encrypt_api_key("s"),
            domain=LS_DOMAIN,
        ))
        await db_session.commit()
        await add_member("admin-1", role="admin")
        login_as("admin-1")
        upstream.add("POST", LS_TOKEN_URL, httpx.Response(200, json={"status": False, "result": 4}))

        response = await client.post(
            "/livespace-proxy",
            json={"integration_id": "ls-1", "module": "Deal", "method": "getAll"},
        )

        assert response.status_code == 502
        assert response.json()["code"] == 4


@pytest.mark.unit
class TestStoreCredentials:

    async def test_pipedrive_verified_then_stored(self, client, db_session, upstream, add_member, login_as):
        db_session.add(CrmIntegration(id="pd-new", organization_id="org-1", platform="pipedrive"))
        await db_session.commit()
        await add_member("owner-1", role="owner")
        login_as("owner-1")
        upstream.add("GET", f"{PIPEDRIVE_API}/users/me", httpx.Response(200, json={
            "success": True, "data": {"id": 5, "name": "Owner", "email": "owner@acme.test"},
        }))

        response = await client.post("/store-crm-credentials", json={"integration_id": "pd-new", "api_key": "new-key"})

        assert response.status_code == 200
        assert response.json()["pipedrive_user"] == {"id": 5, "name": "Owner", "email": "owner@acme.test"}

        db_session.expire_all()
        integration = await db_session.get(CrmIntegration, "pd-new")
        assert integration.status == "connected"
        credentials = (await db_session.execute(
            select(CrmCredentials).where(CrmCredentials.integration_id == "pd-new")
        )).scalar_one()
        assert credentials.api_key_encrypted != "new-key"
        assert decrypt_api_key(credentials.api_key_encrypted) == "new-key"

    async def test_rejected_key_is_not_stored(self, client, db_session, upstream, add_member, login_as):
        db_session.add(CrmIntegration(id="pd-new", organization_id="org-1", platform="pipedrive"))
        await db_session.commit()
        await add_member("owner-1", role="owner")
        login_as("owner-1")
        upstream.add("GET", f"{PIPEDRIVE_API}/users/me", httpx.Response(401, json={"success": False}))

        response = await client.post("/store-crm-credentials", json={"integration_id": "pd-new", "api_key": "bad"})

        assert response.status_code == 502
        db_session.expire_all()
        assert (await db_session.get(CrmIntegration, "pd-new")).status == "pending"
        assert (await db_session.execute(select(CrmCredentials))).scalars().all() == []

    async def test_livespace_requires_secret_and_domain(self, client, livespace_pending, add_member, login_as):
        await add_member("owner-1", role="owner")
        login_as("owner-1")

        response = await client.post("/store-crm-credentials", json={"integration_id": "ls-1", "api_key": "k"})
        assert response.status_code == 400

    async def test_livespace_session_variant(self, client, db_session, upstream, livespace_pending, add_member,
                                             login_as):
        await add_member("owner-1", role="owner")
        login_as("owner-1")
        upstream.add("POST", LS_TOKEN_URL, httpx.Response(200, json={
            "status": True, "result": {"token": "t", "session_id": "s"},
        }))
        upstream.add("POST", LS_USER_INFO_URL, httpx.Response(200, json={
            "status": True, "result": {"email": "owner@acme.test", "name": "Owner"},
        }))

        response = await client.post("/store-crm-credentials", json={
            "integration_id": "ls-1",
            "api_key": "k",
            "api_secret": "s3cret",
            "domain": "acme.livespace.io/",
        })

        assert response.status_code == 200
        assert response.json()["livespace_user"] == {"email": "owner@acme.test", "name": "Owner"}
        db_session.expire_all()
        credentials = (await db_session.execute(select(CrmCredentials))).scalar_one()
        assert credentials.domain == LS_DOMAIN
        assert credentials.signature_variant == "session"
        assert decrypt_api_key(credentials.api_secret_encrypted) == "s3cret"


@pytest.mark.unit
class TestConnectionCheck:

    async def test_pipedrive_connection(self, client, upstream, pipedrive, add_member, login_as):
        await add_member("admin-1", role="admin")
        login_as("admin-1")
        upstream.add("GET", f"{PIPEDRIVE_API}/users/me", httpx.Response(200, json={
            "success": True, "data": {"id": 1, "name": "A", "email": "a@acme.test"},
        }))

        response = await client.post("/test-crm-connection", json={"integration_id": "pd-1"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "user": {"id": 1, "name": "A", "email": "a@acme.test"}}
