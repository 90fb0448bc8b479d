"""
Direct meeting analysis updates.
"""
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from callos.exceptions import InvalidRequestError, NotFoundError
from callos.logging_config import get_logger
from callos.models import Meeting, MeetingType
from callos.services.callback import clamp_score

logger = get_logger(__name__)

UPDATABLE_FIELDS = ("analysis_data", "overall_score", "meeting_type_id")


def meeting_summary(meeting: Meeting) -> Dict[str, Any]:
    return {
        "id": meeting.id,
        "organization_id": meeting.organization_id,
        "user_id": meeting.user_id,
        "meeting_type_id": meeting.meeting_type_id,
        "title": meeting.title,
        "meeting_date": meeting.meeting_date,
        "duration": meeting.duration,
        "processing_status": meeting.processing_status,
        "overall_score": meeting.overall_score,
        "analysis_data": meeting.analysis_data,
        "updated_at": meeting.updated_at.isoformat() if meeting.updated_at else None,
    }


async def update_meeting_analysis(session: AsyncSession, meeting_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Update only the fields present in ``changes``.

    Raises:
        InvalidRequestError: Missing meeting_id or unknown meeting type
        NotFoundError: Unknown meeting
    """
    if not meeting_id:
        raise InvalidRequestError("meeting_id is required")

    meeting = await session.get(Meeting, meeting_id)
    if meeting is None:
        raise NotFoundError("Meeting not found")

    if "analysis_data" in changes:
        meeting.analysis_data = changes["analysis_data"]
    if "overall_score" in changes:
        meeting.overall_score = clamp_score(changes["overall_score"])
    if "meeting_type_id" in changes:
        meeting_type_id = changes["meeting_type_id"]
        if meeting_type_id is not None:
            meeting_type = await session.get(MeetingType, meeting_type_id)
            if meeting_type is None or meeting_type.organization_id != meeting.organization_id:
                raise InvalidRequestError("Unknown meeting_type_id for this organization")
        meeting.meeting_type_id = meeting_type_id

    await session.flush()
    await session.refresh(meeting)
    logger.info("meeting_analysis_updated", meeting_id=meeting_id, fields=sorted(k for k in changes if k in UPDATABLE_FIELDS))
    return meeting_summary(meeting)
