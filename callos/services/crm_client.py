"""
Uniform call shape over the Pipedrive and Livespace wire protocols.

Every entry point resolves the integration first, checks the caller's
access against the owning organization, then loads and decrypts the
stored credentials before any CRM request is made.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callos.exceptions import ConfigurationError, InvalidRequestError, NotFoundError
from callos.logging_config import get_logger
from callos.models import CrmCredentials, CrmIntegration
from callos.services.auth_service import AuthenticatedUser, authorize_integration_access
from callos.services.encryption import decrypt_api_key, encrypt_api_key
from callos.services.livespace import SIGNATURE_VARIANTS, build_strategy, normalize_domain
from callos.services.pipedrive import PipedriveClient

logger = get_logger(__name__)

PIPEDRIVE = "pipedrive"
LIVESPACE = "livespace"
SUPPORTED_PLATFORMS = (PIPEDRIVE, LIVESPACE)


@dataclass
class CrmConnection:
    """Decrypted credentials for one integration; lives only for the request."""
    platform: str
    api_key: str
    api_secret: Optional[str] = None
    domain: Optional[str] = None
    signature_variant: str = "session"


async def get_integration(session: AsyncSession, integration_id: str) -> CrmIntegration:
    integration = await session.get(CrmIntegration, integration_id)
    if integration is None:
        raise NotFoundError("Integration not found")
    return integration


async def get_connected_integration(session: AsyncSession, organization_id: str) -> Optional[CrmIntegration]:
    result = await session.execute(
        select(CrmIntegration)
        .where(
            CrmIntegration.organization_id == organization_id,
            CrmIntegration.status == "connected",
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_credentials(session: AsyncSession, integration_id: str) -> Optional[CrmCredentials]:
    result = await session.execute(
        select(CrmCredentials).where(CrmCredentials.integration_id == integration_id)
    )
    return result.scalar_one_or_none()


async def load_connection(session: AsyncSession, integration: CrmIntegration) -> CrmConnection:
    """
    Load and decrypt the credentials of an integration.

    Raises:
        NotFoundError: If no credentials are stored
        ConfigurationError: If a Livespace domain, key or secret is missing
    """
    credentials = await get_credentials(session, integration.id)
    if credentials is None or not credentials.api_key_encrypted:
        raise NotFoundError("Credentials not found")

    api_key = decrypt_api_key(credentials.api_key_encrypted)
    if not api_key:
        raise ConfigurationError("Failed to decrypt API key")

    if integration.platform == LIVESPACE:
        if not credentials.api_secret_encrypted or not credentials.domain:
            raise ConfigurationError("Missing Livespace credentials (api_secret, domain)")
        api_secret = decrypt_api_key(credentials.api_secret_encrypted)
        if not api_secret:
            raise ConfigurationError("Failed to decrypt API secret")
        return CrmConnection(
            platform=LIVESPACE,
            api_key=api_key,
            api_secret=api_secret,
            domain=credentials.domain,
            signature_variant=credentials.signature_variant or "session",
        )

    return CrmConnection(platform=integration.platform, api_key=api_key)


class CrmClient:
    """Dispatches CRM operations on the integration's platform."""

    def __init__(self, http: httpx.AsyncClient, connection: CrmConnection):
        self.http = http
        self.connection = connection

    async def call(self, operation: str, params: Optional[Dict[str, Any]] = None, http_method: str = "GET") -> Any:
        """
        Run one CRM operation.

        For Pipedrive ``operation`` is an endpoint path such as ``/deals/1``;
        for Livespace it is ``"Module/method"``.
        """
        platform = self.connection.platform
        if platform == PIPEDRIVE:
            client = PipedriveClient(self.http, self.connection.api_key)
            response = await client.request(http_method, operation, body=params)
            try:
                return response.json()
            except ValueError:
                return {"raw": response.text}

        if platform == LIVESPACE:
            module, _, method = operation.partition("/")
            if not module or not method:
                raise InvalidRequestError("Livespace operation must look like 'Module/method'")
            strategy = build_strategy(
                self.connection.domain,
                self.connection.api_key,
                self.connection.api_secret,
                self.connection.signature_variant,
            )
            return await strategy.call(self.http, module, method, params or {})

        raise ConfigurationError(f"Platform {platform} not yet supported")

    async def get_current_user(self) -> Dict[str, Any]:
        if self.connection.platform == PIPEDRIVE:
            user = await PipedriveClient(self.http, self.connection.api_key).get_current_user()
            return {"id": user.get("id"), "name": user.get("name"), "email": user.get("email")}

        data = await self.call("Default/User_getInfo", {})
        result = data.get("result") if isinstance(data.get("result"), dict) else {}
        return {"email": result.get("email"), "name": result.get("name")}


async def open_client(
    session: AsyncSession,
    http: httpx.AsyncClient,
    user: Optional[AuthenticatedUser],
    integration_id: str,
    expected_platform: Optional[str] = None,
) -> CrmClient:
    """
    Resolve an integration into a ready client.

    ``user`` is None for internal service calls, which skip the role check.
    """
    if not integration_id:
        raise InvalidRequestError("Missing integration_id")

    integration = await get_integration(session, integration_id)
    if user is not None:
        await authorize_integration_access(session, user, integration)
    if expected_platform and integration.platform != expected_platform:
        raise InvalidRequestError(f"Integration is not a {expected_platform} integration")

    connection = await load_connection(session, integration)
    return CrmClient(http, connection)


async def call_crm(
    session: AsyncSession,
    http: httpx.AsyncClient,
    user: Optional[AuthenticatedUser],
    integration_id: str,
    operation: str,
    params: Optional[Dict[str, Any]] = None,
    http_method: str = "GET",
    expected_platform: Optional[str] = None,
) -> Any:
    """Authorize, load credentials and run one CRM operation."""
    client = await open_client(session, http, user, integration_id, expected_platform)
    logger.info(
        "crm_call",
        integration_id=integration_id,
        platform=client.connection.platform,
        operation=operation.split("?")[0],
    )
    return await client.call(operation, params, http_method)


async def check_connection(
    session: AsyncSession,
    http: httpx.AsyncClient,
    user: AuthenticatedUser,
    integration_id: str,
) -> Dict[str, Any]:
    client = await open_client(session, http, user, integration_id)
    logger.info("crm_connection_test", integration_id=integration_id, platform=client.connection.platform)
    return {"success": True, "user": await client.get_current_user()}


async def store_credentials(
    session: AsyncSession,
    http: httpx.AsyncClient,
    user: AuthenticatedUser,
    integration_id: str,
    api_key: str,
    api_secret: Optional[str] = None,
    domain: Optional[str] = None,
    platform: Optional[str] = None,
    signature_variant: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Verify credentials against the CRM, then persist them encrypted.

    The integration is marked ``connected`` only after a successful live check.
    """
    if not integration_id or not api_key:
        raise InvalidRequestError("Missing required fields: integration_id, api_key")

    integration = await get_integration(session, integration_id)
    await authorize_integration_access(session, user, integration)

    platform = platform or integration.platform
    if platform not in SUPPORTED_PLATFORMS:
        raise InvalidRequestError(f"Platform {platform} not yet supported")

    variant = signature_variant or "session"
    if variant not in SIGNATURE_VARIANTS:
        raise InvalidRequestError(f"Unknown signature_variant: {variant}")

    if platform == LIVESPACE:
        if not api_secret or not domain:
            raise InvalidRequestError("Missing required fields for Livespace: api_secret, domain")
        domain = normalize_domain(domain)
        connection = CrmConnection(LIVESPACE, api_key, api_secret, domain, variant)
        verified_user = await CrmClient(http, connection).get_current_user()
        user_key = "livespace_user"
    else:
        api_secret, domain = None, None
        verified_user = await CrmClient(http, CrmConnection(PIPEDRIVE, api_key)).get_current_user()
        user_key = "pipedrive_user"

    logger.info("crm_credentials_verified", integration_id=integration_id, platform=platform)

    credentials = await get_credentials(session, integration_id)
    if credentials is None:
        credentials = CrmCredentials(integration_id=integration_id)
        session.add(credentials)
    credentials.auth_type = "api_key"
    credentials.api_key_encrypted = encrypt_api_key(api_key)
    credentials.api_secret_encrypted = encrypt_api_key(api_secret) if api_secret else None
    credentials.domain = domain
    credentials.signature_variant = variant

    integration.status = "connected"
    await session.flush()

    logger.info("crm_credentials_stored", integration_id=integration_id, platform=platform)
    return {"success": True, user_key: verified_user}
