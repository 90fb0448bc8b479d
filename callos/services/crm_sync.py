"""
Pushes analyzed meetings into the organization's CRM.
"""
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callos import database, http_client
from callos.exceptions import APIError, CallosError, ConfigurationError, NotFoundError
from callos.logging_config import LogContext, get_logger
from callos.models import CrmFieldMapping, CrmIntegration, CrmSyncLog, Meeting
from callos.monitoring import record_error
from callos.services.auth_service import AuthenticatedUser, authorize_integration_access
from callos.services.crm_client import (
    PIPEDRIVE,
    get_connected_integration,
    get_integration,
    load_connection,
)
from callos.services.pipedrive import PipedriveClient

logger = get_logger(__name__)

NOTE_LIMIT = 5000


def format_duration(minutes: Optional[int]) -> Optional[str]:
    """Minutes as Pipedrive's HH:MM."""
    if not minutes:
        return None
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def format_due_date(meeting_date: Optional[str]) -> Optional[str]:
    if not meeting_date:
        return None
    try:
        return datetime.fromisoformat(meeting_date.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        return meeting_date[:10]


def build_activity(meeting: Meeting, mappings: List[CrmFieldMapping]) -> Dict[str, Any]:
    activity: Dict[str, Any] = {
        "subject": meeting.title or "Meeting",
        "type": "meeting",
    }
    due_date = format_due_date(meeting.meeting_date)
    if due_date:
        activity["due_date"] = due_date
    duration = format_duration(meeting.duration)
    if duration:
        activity["duration"] = duration
    if meeting.transcript:
        activity["note"] = meeting.transcript[:NOTE_LIMIT]

    for mapping in mappings:
        if mapping.crm_object_type != "activity":
            continue
        if not hasattr(Meeting, mapping.callos_field):
            logger.warning("unknown_mapped_field", field=mapping.callos_field)
            continue
        value = getattr(meeting, mapping.callos_field)
        if value is not None:
            activity[mapping.crm_field] = value
    return activity


async def _active_mappings(session: AsyncSession, integration_id: str) -> List[CrmFieldMapping]:
    result = await session.execute(
        select(CrmFieldMapping).where(
            CrmFieldMapping.integration_id == integration_id,
            CrmFieldMapping.is_active.is_(True),
        )
    )
    return list(result.scalars().all())


async def sync_meeting_to_crm(
    session: AsyncSession,
    http: httpx.AsyncClient,
    meeting_id: str,
    integration_id: Optional[str] = None,
    user: Optional[AuthenticatedUser] = None,
    triggered_by: str = "manual",
) -> Dict[str, Any]:
    """
    Create a CRM activity for a meeting and record the attempt.

    Args:
        session: Database session
        http: Outbound HTTP client
        meeting_id: Meeting to sync
        integration_id: Specific integration; defaults to the organization's connected one
        user: Calling user, None for internal calls
        triggered_by: Recorded on the sync log (manual, callback)

    Returns:
        ``{"success": True, "crm_record_id": ...}``

    Raises:
        NotFoundError: Unknown meeting or no connected integration
        APIError: The CRM rejected the activity
    """
    meeting = await session.get(Meeting, meeting_id)
    if meeting is None:
        raise NotFoundError("Meeting not found")

    if integration_id:
        integration: Optional[CrmIntegration] = await get_integration(session, integration_id)
        if integration.organization_id != meeting.organization_id:
            raise NotFoundError("No active CRM integration found")
    else:
        integration = await get_connected_integration(session, meeting.organization_id)
        if integration is None:
            raise NotFoundError("No active CRM integration found")

    if user is not None:
        await authorize_integration_access(session, user, integration)

    with LogContext(meeting_id=meeting.id, integration_id=integration.id, platform=integration.platform):
        started = time.monotonic()
        crm_record_id = None
        error = None
        try:
            connection = await load_connection(session, integration)
            if connection.platform != PIPEDRIVE:
                raise ConfigurationError(f"Platform {connection.platform} not yet implemented")
            mappings = await _active_mappings(session, integration.id)
            activity = build_activity(meeting, mappings)
            crm_record_id = await PipedriveClient(http, connection.api_key).create_activity(activity)
        except (CallosError, httpx.HTTPError) as e:
            error = e
            record_error(type(e).__name__, "crm_sync")
            logger.error("crm_sync_failed", error=str(e))

        session.add(CrmSyncLog(
            integration_id=integration.id,
            meeting_id=meeting.id,
            status="failed" if error else "success",
            crm_record_id=crm_record_id,
            error=str(error) if error else None,
            objects_synced={"activity": 1} if not error else {"activity": 0},
            duration_ms=int((time.monotonic() - started) * 1000),
            triggered_by=triggered_by,
        ))
        await session.commit()

        if isinstance(error, CallosError):
            raise error
        if error is not None:
            raise APIError(f"CRM sync failed: {error}", platform=integration.platform)

        logger.info("crm_sync_completed", crm_record_id=crm_record_id)
        return {"success": True, "crm_record_id": crm_record_id}


async def sync_meeting_in_background(meeting_id: str, integration_id: str) -> None:
    """Best-effort sync after a completed callback; failures are logged only."""
    try:
        async with database.get_db_session() as session:
            async with http_client.create_http_client() as http:
                await sync_meeting_to_crm(session, http, meeting_id, integration_id, triggered_by="callback")
    except (CallosError, httpx.HTTPError) as e:
        logger.error("background_crm_sync_failed", meeting_id=meeting_id, error=str(e))
