"""
Assembles the document forwarded to the downstream automation endpoint.

Each integration section is resolved independently; a failure in one is
logged and the section is omitted, the rest of the document still builds.
"""
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callos.config import settings
from callos.exceptions import CallosError, ConfigurationError, InvalidRequestError, NotFoundError
from callos.logging_config import LogContext, get_logger
from callos.models import (
    CrmIntegration,
    FirefliesCredential,
    LivespaceScenario,
    Meeting,
    OrganizationContext,
    PipedriveScenario,
    Profile,
    TelnyxCredential,
)
from callos.monitoring import record_error
from callos.services.crm_client import LIVESPACE, PIPEDRIVE, get_connected_integration, get_credentials
from callos.services.encryption import decrypt_api_key
from callos.services.google_oauth import get_google_integration, get_valid_access_token
from callos.services.matcher import list_meeting_types, serialize_meeting_type

logger = get_logger(__name__)


def generate_callback_token() -> str:
    """Random, time-suffixed one-time token."""
    return f"{uuid.uuid4()}-{int(time.time() * 1000)}"


def signature_to_html(signature: Optional[str]) -> Optional[str]:
    if not signature:
        return None
    return (
        signature.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace("\n", "<br>")
    )


async def load_meeting(session: AsyncSession, meeting_id: str) -> Meeting:
    meeting = await session.get(Meeting, meeting_id)
    if meeting is None:
        raise NotFoundError(f"Meeting not found: {meeting_id}")
    return meeting


async def build_meeting_type_catalog(session: AsyncSession, organization_id: str) -> List[Dict[str, Any]]:
    """All meeting types of the organization, each with its active scenarios folded in."""
    meeting_types = await list_meeting_types(session, organization_id)

    pipedrive_rows = (
        await session.execute(
            select(PipedriveScenario)
            .where(PipedriveScenario.organization_id == organization_id, PipedriveScenario.is_active.is_(True))
            .order_by(PipedriveScenario.order_index)
        )
    ).scalars().all()
    livespace_rows = (
        await session.execute(
            select(LivespaceScenario)
            .where(LivespaceScenario.organization_id == organization_id, LivespaceScenario.is_active.is_(True))
            .order_by(LivespaceScenario.order_index)
        )
    ).scalars().all()

    logger.info(
        "meeting_type_catalog_loaded",
        meeting_types=len(meeting_types),
        pipedrive_scenarios=len(pipedrive_rows),
        livespace_scenarios=len(livespace_rows),
    )

    catalog = []
    for meeting_type in meeting_types:
        entry = serialize_meeting_type(meeting_type)
        entry["pipedrive_scenarios"] = [
            {
                "pipeline_id": s.pipeline_id,
                "stage_id": s.stage_id,
                "deal_status": s.deal_status,
                "order_index": s.order_index,
            }
            for s in pipedrive_rows
            if s.meeting_type_id == meeting_type.id
        ]
        entry["livespace_scenarios"] = [
            {
                "process_id": s.process_id,
                "stage_id": s.stage_id,
                "deal_status": s.deal_status,
                "order_index": s.order_index,
            }
            for s in livespace_rows
            if s.meeting_type_id == meeting_type.id
        ]
        catalog.append(entry)
    return catalog


async def _crm_section(session: AsyncSession, meeting: Meeting) -> Optional[Dict[str, Any]]:
    integration: Optional[CrmIntegration] = await get_connected_integration(session, meeting.organization_id)
    if integration is None:
        return None
    credentials = await get_credentials(session, integration.id)
    if credentials is None:
        return None

    metadata = meeting.webhook_metadata if isinstance(meeting.webhook_metadata, dict) else {}
    deal_id = metadata.get("deal_id")
    api_key = decrypt_api_key(credentials.api_key_encrypted)
    if not api_key:
        return None

    if integration.platform == PIPEDRIVE:
        return {PIPEDRIVE: {"api_key": api_key, "deal_id": deal_id}}
    if integration.platform == LIVESPACE:
        api_secret = decrypt_api_key(credentials.api_secret_encrypted)
        if not api_secret:
            return None
        return {
            LIVESPACE: {
                "api_key": api_key,
                "api_secret": api_secret,
                "domain": credentials.domain,
                "deal_id": deal_id,
            }
        }
    return None


async def _provider_key_section(session: AsyncSession, model, meeting: Meeting) -> Optional[Dict[str, Any]]:
    result = await session.execute(
        select(model.api_key_encrypted).where(
            model.user_id == meeting.user_id,
            model.organization_id == meeting.organization_id,
            model.is_active.is_(True),
        )
    )
    encrypted = result.scalar_one_or_none()
    if not encrypted:
        return None
    api_key = decrypt_api_key(encrypted)
    return {"api_key": api_key} if api_key else None


async def _google_section(session: AsyncSession, http: httpx.AsyncClient, meeting: Meeting) -> Optional[Dict[str, Any]]:
    integration = await get_google_integration(session, meeting.user_id, meeting.organization_id)
    if integration is None:
        return None
    access_token, _ = await get_valid_access_token(session, http, integration)
    if not access_token:
        logger.warning("google_access_token_unavailable", user_id=meeting.user_id)
        return None
    return {
        "email": integration.google_email,
        "gmail_enabled": integration.gmail_enabled,
        "calendar_enabled": integration.calendar_enabled,
        "drive_enabled": integration.drive_enabled,
        "scopes": integration.scopes,
        "access_token": access_token,
    }


async def collect_integrations(session: AsyncSession, http: httpx.AsyncClient, meeting: Meeting) -> Dict[str, Any]:
    """
    Decrypt every configured integration for the meeting's user and organization.

    Returns:
        Mapping of integration name to its plaintext credentials
    """
    integrations: Dict[str, Any] = {}

    sections = (
        ("crm", lambda: _crm_section(session, meeting)),
        ("fireflies", lambda: _provider_key_section(session, FirefliesCredential, meeting)),
        ("telnyx", lambda: _provider_key_section(session, TelnyxCredential, meeting)),
        ("google", lambda: _google_section(session, http, meeting)),
    )
    for name, load in sections:
        try:
            section = await load()
        except (CallosError, httpx.HTTPError) as e:
            record_error(type(e).__name__, "payload_builder")
            logger.warning("integration_section_failed", integration=name, error=str(e))
            continue
        except Exception as e:
            record_error(type(e).__name__, "payload_builder")
            logger.exception("integration_section_crashed", integration=name, error=str(e))
            continue
        if section is None:
            continue
        if name == "crm":
            integrations.update(section)
        else:
            integrations[name] = section

    logger.info("integrations_collected", integrations=sorted(integrations))
    return integrations


async def build_payload(session: AsyncSession, http: httpx.AsyncClient, meeting_id: str) -> Dict[str, Any]:
    """
    Build the automation document for a meeting and mint its callback token.

    Args:
        session: Database session
        http: Outbound HTTP client, used for Google token refresh
        meeting_id: Meeting to assemble

    Returns:
        The outbound document

    Raises:
        InvalidRequestError: If meeting_id is missing
        NotFoundError: If the meeting does not exist
        ConfigurationError: If PUBLIC_BASE_URL is not set
    """
    if not meeting_id:
        raise InvalidRequestError("meeting_id is required")

    callback_url = settings.callback_url
    if not callback_url:
        raise ConfigurationError("PUBLIC_BASE_URL is not configured", status_code=500)

    meeting = await load_meeting(session, meeting_id)

    with LogContext(meeting_id=meeting.id, organization_id=meeting.organization_id):
        profile = await session.get(Profile, meeting.user_id)
        context_row = (
            await session.execute(
                select(OrganizationContext).where(OrganizationContext.organization_id == meeting.organization_id)
            )
        ).scalar_one_or_none()

        catalog = await build_meeting_type_catalog(session, meeting.organization_id)

        callback_token = generate_callback_token()
        meeting.callback_token = callback_token
        await session.flush()

        integrations = await collect_integrations(session, http, meeting)

        payload = {
            "meeting_id": meeting.id,
            "callback_url": callback_url,
            "callback_token": callback_token,
            "meeting_types": catalog,
            "current_meeting_type_id": meeting.meeting_type_id,
            "raw_webhook_data": meeting.webhook_metadata,
            "webhook_source": meeting.webhook_source or "unknown",
            "integrations": integrations,
            "user": {
                "id": meeting.user_id,
                "email": profile.email if profile else None,
                "full_name": profile.full_name if profile else None,
                "email_signature": (profile.email_signature or None) if profile else None,
                "email_signature_html": signature_to_html(profile.email_signature) if profile else None,
            },
            "organization_id": meeting.organization_id,
            "organization_context": context_row.to_dict() if context_row else None,
        }

        logger.info("payload_prepared", meeting_types=len(catalog))
        return payload
