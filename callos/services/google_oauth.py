"""
Google OAuth access token refresh.

Tokens are refreshed before use when they are missing an expiry or expire
within the configured threshold. A failed refresh falls back to the stored
token; callers must tolerate a stale-token failure from the Google API.
Concurrent refreshes for one integration are not coordinated.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callos.config import settings
from callos.exceptions import ConfigurationError, CredentialError, GoogleAPIError
from callos.logging_config import get_logger
from callos.models import GoogleIntegration
from callos.monitoring import google_token_refreshes_total
from callos.services.encryption import encrypt_api_key, decrypt_api_key

logger = get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; stored values are always UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def should_refresh(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when the expiry is unknown or closer than the refresh threshold."""
    if expires_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    threshold = timedelta(seconds=settings.token_refresh_threshold_seconds)
    return _as_utc(expires_at) - _as_utc(now) < threshold


async def get_google_integration(
    session: AsyncSession,
    user_id: str,
    organization_id: str,
) -> Optional[GoogleIntegration]:
    result = await session.execute(
        select(GoogleIntegration).where(
            GoogleIntegration.user_id == user_id,
            GoogleIntegration.organization_id == organization_id,
            GoogleIntegration.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def refresh_access_token(client: httpx.AsyncClient, refresh_token: str) -> Tuple[str, datetime]:
    """
    Exchange a refresh token for a new access token.

    Returns:
        (access_token, expires_at)

    Raises:
        ConfigurationError: If the OAuth client is not configured
        GoogleAPIError: If Google rejects the refresh
    """
    if not settings.is_google_configured:
        raise ConfigurationError(
            "Google OAuth not configured. Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET.",
            status_code=500,
        )

    response = await client.post(
        settings.google_token_url,
        data={
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        },
    )
    if response.status_code != 200:
        raise GoogleAPIError(
            f"Token refresh failed ({response.status_code}): {response.text[:500]}",
            upstream_status=response.status_code,
        )

    try:
        data = response.json()
    except ValueError:
        raise GoogleAPIError(f"Token refresh response is not JSON: {response.text[:200]}")
    if not isinstance(data, dict):
        raise GoogleAPIError("Token refresh response is not a JSON object")

    access_token = data.get("access_token")
    if not access_token or not isinstance(access_token, str):
        raise GoogleAPIError("Token refresh response did not include an access token")

    expires_in = data.get("expires_in") or 3600
    try:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=float(expires_in))
    except (TypeError, ValueError, OverflowError):
        raise GoogleAPIError(f"Token refresh response has an invalid expires_in: {expires_in!r}")
    return access_token, expires_at


async def get_valid_access_token(
    session: AsyncSession,
    client: httpx.AsyncClient,
    integration: GoogleIntegration,
) -> Tuple[Optional[str], bool]:
    """
    Return a usable access token for the integration, refreshing first if needed.

    Returns:
        (access_token, refreshed). The token may be stale when a refresh failed.
    """
    if should_refresh(integration.token_expires_at):
        logger.info("google_token_refresh_needed", user_id=integration.user_id)
        try:
            refresh_token = decrypt_api_key(integration.refresh_token_encrypted)
            if not refresh_token:
                raise CredentialError("No refresh token stored")
            access_token, expires_at = await refresh_access_token(client, refresh_token)
        except ConfigurationError:
            google_token_refreshes_total.labels(status="not_configured").inc()
            raise
        except (GoogleAPIError, CredentialError, httpx.HTTPError) as e:
            google_token_refreshes_total.labels(status="failed").inc()
            logger.error("google_token_refresh_failed", user_id=integration.user_id, error=str(e))
        else:
            integration.access_token_encrypted = encrypt_api_key(access_token)
            integration.token_expires_at = expires_at
            await session.flush()
            google_token_refreshes_total.labels(status="success").inc()
            logger.info("google_token_refreshed", user_id=integration.user_id, expires_at=expires_at.isoformat())
            return access_token, True

    return decrypt_api_key(integration.access_token_encrypted), False
