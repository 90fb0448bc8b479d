"""
Caller authentication and role checks.

User bearer tokens are validated against the hosted auth provider; internal
function-to-function calls present the service role key instead.
"""
import hmac
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callos.config import settings
from callos.exceptions import AuthenticationError, PermissionDeniedError
from callos.logging_config import get_logger
from callos.models import Profile, UserRole, CrmIntegration

logger = get_logger(__name__)

ADMIN_ROLES = ("owner", "admin")


@dataclass
class AuthenticatedUser:
    """User resolved from a bearer token."""
    id: str
    email: Optional[str] = None


def extract_bearer_token(authorization: Optional[str]) -> str:
    """Return the token part of an `Authorization: Bearer ...` header."""
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing authorization header")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise AuthenticationError("Missing authorization header")
    return token


def is_service_key(token: str) -> bool:
    return hmac.compare_digest(token.encode(), settings.service_role_key.encode())


async def verify_user_token(client: httpx.AsyncClient, token: str) -> AuthenticatedUser:
    """
    Resolve a user access token through the hosted auth provider.

    Raises:
        AuthenticationError: If the provider rejects the token
    """
    headers = {"Authorization": f"Bearer {token}"}
    if settings.auth_api_key:
        headers["apikey"] = settings.auth_api_key

    try:
        response = await client.get(f"{settings.auth_url.rstrip('/')}/user", headers=headers)
    except httpx.RequestError as e:
        logger.error("auth_provider_unreachable", error=str(e))
        raise AuthenticationError("Unauthorized")

    if response.status_code != 200:
        logger.info("auth_token_rejected", status=response.status_code)
        raise AuthenticationError("Unauthorized")

    data = response.json()
    user_id = data.get("id")
    if not user_id:
        raise AuthenticationError("Unauthorized")
    return AuthenticatedUser(id=user_id, email=data.get("email"))


async def is_super_admin(session: AsyncSession, user_id: str) -> bool:
    result = await session.execute(
        select(Profile.is_super_admin).where(Profile.id == user_id)
    )
    return bool(result.scalar_one_or_none())


async def get_user_role(session: AsyncSession, user_id: str, organization_id: str) -> Optional[str]:
    result = await session.execute(
        select(UserRole.role)
        .where(UserRole.user_id == user_id, UserRole.organization_id == organization_id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def require_super_admin(session: AsyncSession, user: AuthenticatedUser) -> None:
    if not await is_super_admin(session, user.id):
        logger.info("super_admin_required", user_id=user.id)
        raise PermissionDeniedError("Only Super Admin can use this function")


async def require_organization_member(session: AsyncSession, user: AuthenticatedUser, organization_id: str) -> str:
    """Require any role in the organization; returns the role."""
    role = await get_user_role(session, user.id, organization_id)
    if role is None and not await is_super_admin(session, user.id):
        raise PermissionDeniedError("User does not have access to this organization")
    return role or "super_admin"


async def authorize_integration_access(
    session: AsyncSession,
    user: AuthenticatedUser,
    integration: CrmIntegration,
) -> None:
    """
    Allow super admins and owners/admins of the integration's organization.

    Raises:
        PermissionDeniedError: For everyone else
    """
    if await is_super_admin(session, user.id):
        return
    role = await get_user_role(session, user.id, integration.organization_id)
    if role in ADMIN_ROLES:
        return
    logger.info(
        "crm_access_denied",
        user_id=user.id,
        integration_id=integration.id,
        role=role,
    )
    raise PermissionDeniedError("Forbidden")
