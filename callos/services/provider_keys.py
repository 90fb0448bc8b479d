"""
Fireflies and Telnyx API key validation and storage.
"""
from datetime import datetime, timezone
from typing import Any, Dict

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callos.config import settings
from callos.exceptions import FirefliesAPIError, InvalidRequestError, PermissionDeniedError, TelnyxAPIError
from callos.logging_config import get_logger
from callos.models import FirefliesCredential, TelnyxCredential
from callos.services.auth_service import ADMIN_ROLES, AuthenticatedUser, require_organization_member
from callos.services.encryption import encrypt_api_key

logger = get_logger(__name__)

FIREFLIES_USER_QUERY = "query { user { user_id email name } }"


async def validate_fireflies_key(http: httpx.AsyncClient, api_key: str) -> Dict[str, Any]:
    """Return the Fireflies user the key belongs to."""
    response = await http.post(
        settings.fireflies_api_url,
        headers={"Authorization": f"Bearer {api_key}"},
        json={"query": FIREFLIES_USER_QUERY},
    )
    try:
        data = response.json()
    except ValueError:
        data = {}

    user = (data.get("data") or {}).get("user") if isinstance(data, dict) else None
    if response.status_code != 200 or not user:
        errors = data.get("errors") if isinstance(data, dict) else None
        message = errors[0].get("message") if errors else None
        raise FirefliesAPIError(message or "Invalid Fireflies API key", upstream_status=response.status_code)
    return user


async def validate_telnyx_key(http: httpx.AsyncClient, api_key: str) -> None:
    # /balance answers for any valid key without needing provisioned resources.
    response = await http.get(
        f"{settings.telnyx_api_base.rstrip('/')}/balance",
        headers={"Authorization": f"Bearer {api_key}"},
    )
    if response.status_code != 200:
        logger.warning("telnyx_key_rejected", status=response.status_code)
        raise TelnyxAPIError(
            "Invalid Telnyx API key. Please check your key and try again.",
            upstream_status=response.status_code,
        )


async def _authorize(session: AsyncSession, caller: AuthenticatedUser, user_id: str, organization_id: str) -> None:
    role = await require_organization_member(session, caller, organization_id)
    if caller.id != user_id and role not in ADMIN_ROLES + ("super_admin",):
        raise PermissionDeniedError("Cannot store keys for another user")


async def _upsert(session: AsyncSession, model, user_id: str, organization_id: str, api_key: str):
    result = await session.execute(
        select(model).where(model.user_id == user_id, model.organization_id == organization_id)
    )
    credential = result.scalar_one_or_none()
    if credential is None:
        credential = model(user_id=user_id, organization_id=organization_id)
        session.add(credential)
    credential.api_key_encrypted = encrypt_api_key(api_key)
    credential.is_active = True
    credential.last_validated_at = datetime.now(timezone.utc)
    await session.flush()
    return credential


def _require_fields(api_key: str, user_id: str, organization_id: str) -> None:
    if not api_key or not user_id or not organization_id:
        raise InvalidRequestError("Missing required fields: apiKey, userId, organizationId")


async def save_fireflies_key(
    session: AsyncSession,
    http: httpx.AsyncClient,
    caller: AuthenticatedUser,
    api_key: str,
    user_id: str,
    organization_id: str,
) -> Dict[str, Any]:
    _require_fields(api_key, user_id, organization_id)
    await _authorize(session, caller, user_id, organization_id)

    fireflies_user = await validate_fireflies_key(http, api_key)
    await _upsert(session, FirefliesCredential, user_id, organization_id, api_key)
    logger.info("fireflies_key_saved", user_id=user_id, organization_id=organization_id)
    return {"success": True, "user": fireflies_user}


async def save_telnyx_key(
    session: AsyncSession,
    http: httpx.AsyncClient,
    caller: AuthenticatedUser,
    api_key: str,
    user_id: str,
    organization_id: str,
) -> Dict[str, Any]:
    _require_fields(api_key, user_id, organization_id)
    await _authorize(session, caller, user_id, organization_id)

    await validate_telnyx_key(http, api_key)
    await _upsert(session, TelnyxCredential, user_id, organization_id, api_key)
    logger.info("telnyx_key_saved", user_id=user_id, organization_id=organization_id)
    return {"success": True, "message": "Telnyx API key saved successfully"}
