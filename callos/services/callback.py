"""
Applies automation results to meetings.

A callback body arrives in one of three shapes. It is classified once up
front and handed to exactly one mapper, which produces a
:class:`NormalizedCallback`. Applying the result is a compare-and-clear on
the one-time callback token: a single conditional UPDATE that only matches
while the token is unchanged and the meeting is not yet completed.
"""
import enum
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from callos.exceptions import InvalidCallbackTokenError, InvalidRequestError, NotFoundError
from callos.logging_config import LogContext, get_logger
from callos.models import Meeting, ProcessingStatus
from callos.monitoring import callbacks_total

logger = get_logger(__name__)


class CallbackShape(enum.Enum):
    FLAT = "flat"
    ANALYZE = "analyze"
    ACTION_ITEMS = "action_items"


@dataclass
class NormalizedCallback:
    status: str = ProcessingStatus.COMPLETED
    analysis_data: Optional[Dict[str, Any]] = None
    overall_score: Optional[float] = None
    transcript: Optional[str] = None
    title: Optional[str] = None
    meeting_date: Optional[str] = None
    duration: Optional[int] = None
    deal_id: Optional[Any] = None
    extras: Dict[str, Any] = field(default_factory=dict)


def unwrap_body(body: Any) -> Dict[str, Any]:
    """Use the first element of a list body."""
    if isinstance(body, list):
        body = body[0] if body else {}
    if not isinstance(body, dict):
        raise InvalidRequestError("Callback body must be a JSON object")
    return body


def extract_identity(body: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """(meeting_id, callback_token); ``callos_data`` takes precedence."""
    meeting_id = body.get("meeting_id")
    callback_token = body.get("callback_token")
    callos_data = body.get("callos_data")
    if isinstance(callos_data, dict):
        meeting_id = callos_data.get("meeting_id")
        callback_token = callos_data.get("callback_token")
    return meeting_id, callback_token


def _mapping(value: Any) -> Dict[str, Any]:
    """Non-object values count as absent."""
    return value if isinstance(value, dict) else {}


def _sequence(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _number(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def classify(body: Dict[str, Any]) -> CallbackShape:
    if _mapping(body.get("analyze")):
        return CallbackShape.ANALYZE
    if _sequence(body.get("action_items")):
        return CallbackShape.ACTION_ITEMS
    return CallbackShape.FLAT


def clamp_score(score: Any) -> Optional[float]:
    if score is None:
        return None
    value = _number(score)
    if value is None:
        raise InvalidRequestError("overall_score must be a number")
    return max(0.0, min(100.0, value))


def parse_duration(duration: Any) -> Optional[int]:
    """Duration in minutes."""
    if duration is None:
        return None
    value = _number(duration)
    if value is None:
        raise InvalidRequestError("duration must be a number")
    return round(value)


def _status(body: Dict[str, Any]) -> str:
    return ProcessingStatus.FAILED if body.get("status") == "failed" else ProcessingStatus.COMPLETED


def map_flat(body: Dict[str, Any]) -> NormalizedCallback:
    return NormalizedCallback(
        status=_status(body),
        analysis_data=body.get("analysis_data"),
        overall_score=body.get("overall_score"),
        transcript=body.get("transcript"),
        title=body.get("title"),
        meeting_date=body.get("meeting_date"),
        duration=body.get("duration"),
        deal_id=body.get("deal_id"),
    )


def map_analyze(body: Dict[str, Any]) -> NormalizedCallback:
    analyze = body["analyze"]
    analysis_data = {
        "title": analyze.get("title"),
        "feedback": analyze.get("feedback"),
        "summary": analyze.get("summary"),
        "todoList": analyze.get("todoList"),
        "crmMappings": analyze.get("crmMappings"),
        "successCriterias": analyze.get("successCriterias"),
        "agendaScript": analyze.get("agendaScript"),
        "processMapping": analyze.get("processMapping"),
        "email": analyze.get("email"),
    }
    return NormalizedCallback(
        status=_status(body),
        analysis_data=analysis_data,
        overall_score=body.get("overall_score"),
        transcript=body.get("transcript"),
        title=analyze.get("title") or body.get("title"),
        meeting_date=body.get("meeting_date"),
        duration=body.get("duration"),
        deal_id=body.get("deal_id"),
    )


def _feedback_from_insights(insights: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not isinstance(insights, dict) or not insights:
        return None
    performance = _mapping(insights.get("sales_rep_performance"))
    return {
        "questioningAnalysis": {"score": insights.get("deal_health_score") or 0},
        "strengthsAnalysis": {
            "strengths": [
                {"feedback": f"{key.replace('_', ' ')}: {value}"} for key, value in performance.items()
            ]
        },
        "improvementAnalysis": {
            "improvements": [{"feedback": area} for area in _sequence(insights.get("areas_for_improvement"))]
        },
    }


def map_action_items(body: Dict[str, Any]) -> NormalizedCallback:
    next_meeting = _mapping(body.get("next_meeting"))
    email_draft = _mapping(body.get("email_draft"))
    custom_fields = _mapping(_mapping(body.get("crm_updates")).get("custom_fields"))
    summary = body.get("summary")

    analysis_data = {
        "todoList": {
            "actionItems": [
                {
                    "task": item.get("task"),
                    "priority": item.get("priority"),
                    "assignee": item.get("assignee"),
                    "deadline": item.get("due_date"),
                    "category": "Action Item",
                    "status": item.get("status"),
                }
                for item in _sequence(body.get("action_items"))
                if isinstance(item, dict)
            ]
        },
        "feedback": _feedback_from_insights(body.get("ai_insights")),
        "summary": {
            "quickSummary": summary or "",
            "keyTopics": body.get("key_points") or [],
            "nextSteps": next_meeting.get("agenda") or [],
        },
        "email": {
            "subject": email_draft.get("subject") or "Follow-up",
            "content": email_draft.get("body") or "",
        } if email_draft else None,
        "crmMappings": [{"crmField": key, "value": str(value)} for key, value in custom_fields.items()],
        "crm_deal_id": body.get("crm_deal_id"),
        "ai_insights": body.get("ai_insights"),
        "crm_updates": body.get("crm_updates"),
        "key_points": body.get("key_points"),
        "next_meeting": body.get("next_meeting"),
        "recommendations": body.get("recommendations"),
        "risks_and_opportunities": body.get("risks_and_opportunities"),
        "sentiment_analysis": body.get("sentiment_analysis"),
        "success_criteria_met": body.get("success_criteria_met"),
    }
    title = body.get("title") or (summary[:100] if isinstance(summary, str) and summary else None)
    return NormalizedCallback(
        status=_status(body),
        analysis_data=analysis_data,
        overall_score=body.get("overall_score"),
        transcript=body.get("transcript"),
        title=title,
        meeting_date=body.get("meeting_date"),
        duration=body.get("duration"),
        deal_id=body.get("crm_deal_id"),
    )


MAPPERS: Dict[CallbackShape, Callable[[Dict[str, Any]], NormalizedCallback]] = {
    CallbackShape.FLAT: map_flat,
    CallbackShape.ANALYZE: map_analyze,
    CallbackShape.ACTION_ITEMS: map_action_items,
}


def fireflies_extras(body: Dict[str, Any], meeting_date_given: bool) -> Dict[str, Any]:
    """Column updates from Fireflies metadata, applied for every shape."""
    extras: Dict[str, Any] = {}
    metadata = _mapping(body.get("meeting_metadata"))
    audio_metadata = body.get("audio_metadata")
    participants = body.get("participants")
    timestamped = body.get("timestamped_transcript")

    if metadata.get("fireflies_id"):
        extras["fireflies_id"] = metadata["fireflies_id"]
    audio_url = metadata.get("audio_url") or _mapping(audio_metadata).get("audio_url")
    if audio_url:
        extras["audio_url"] = audio_url
    duration_seconds = _number(metadata.get("duration_seconds"))
    if duration_seconds:
        extras["duration"] = round(duration_seconds / 60)
    if metadata.get("meeting_date") and not meeting_date_given:
        extras["meeting_date"] = metadata["meeting_date"]
    if isinstance(participants, list) and participants:
        extras["participants"] = participants
    if audio_metadata:
        extras["audio_metadata"] = audio_metadata
    if isinstance(timestamped, list) and timestamped:
        extras["timestamped_transcript"] = timestamped
    return extras


def normalize(body: Dict[str, Any]) -> NormalizedCallback:
    shape = classify(body)
    result = MAPPERS[shape](body)
    result.extras = fireflies_extras(body, bool(result.meeting_date))
    logger.debug("callback_classified", shape=shape.value)
    return result


def build_update_values(result: NormalizedCallback) -> Dict[str, Any]:
    values: Dict[str, Any] = {
        "processing_status": result.status,
        "processing_completed_at": datetime.now(timezone.utc),
        "callback_token": None,
    }
    analysis_data = result.analysis_data
    if result.deal_id and isinstance(analysis_data, dict):
        analysis_data = {**analysis_data, "crm_deal_id": result.deal_id}
    if analysis_data is not None:
        values["analysis_data"] = analysis_data
    score = clamp_score(result.overall_score)
    if score is not None:
        values["overall_score"] = score
    if result.transcript:
        values["transcript"] = result.transcript
        values["transcript_source"] = "audio_url"
    if result.title:
        values["title"] = result.title
    if result.meeting_date:
        values["meeting_date"] = result.meeting_date
    duration = parse_duration(result.duration)
    if duration is not None:
        values["duration"] = duration
    values.update(result.extras)
    return values


@dataclass
class CallbackOutcome:
    meeting_id: str
    organization_id: str
    status: str
    duplicate: bool = False


async def apply_callback(session: AsyncSession, body: Any) -> CallbackOutcome:
    """
    Validate the one-time token and apply the result to the meeting.

    Raises:
        InvalidRequestError: Missing meeting_id or callback_token
        NotFoundError: Unknown meeting
        InvalidCallbackTokenError: Token does not match the stored one
    """
    body = unwrap_body(body)
    meeting_id, callback_token = extract_identity(body)
    if not meeting_id or not callback_token:
        callbacks_total.labels(outcome="invalid").inc()
        raise InvalidRequestError("meeting_id and callback_token are required")

    with LogContext(meeting_id=meeting_id):
        meeting = await session.get(Meeting, meeting_id)
        if meeting is None:
            callbacks_total.labels(outcome="not_found").inc()
            raise NotFoundError(f"Meeting not found: {meeting_id}")

        if meeting.processing_status == ProcessingStatus.COMPLETED:
            callbacks_total.labels(outcome="duplicate").inc()
            logger.warning("duplicate_callback_ignored")
            return CallbackOutcome(meeting.id, meeting.organization_id, meeting.processing_status, duplicate=True)

        if meeting.callback_token != callback_token:
            callbacks_total.labels(outcome="invalid_token").inc()
            logger.error("invalid_callback_token")
            raise InvalidCallbackTokenError("Invalid callback token")

        result = normalize(body)
        values = build_update_values(result)

        statement = (
            update(Meeting)
            .where(
                Meeting.id == meeting_id,
                Meeting.callback_token == callback_token,
                Meeting.processing_status != ProcessingStatus.COMPLETED,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        updated = (await session.execute(statement)).rowcount

        if updated == 0:
            # Lost a race with a concurrent callback.
            await session.refresh(meeting)
            if meeting.processing_status == ProcessingStatus.COMPLETED:
                callbacks_total.labels(outcome="duplicate").inc()
                logger.warning("duplicate_callback_ignored", raced=True)
                return CallbackOutcome(meeting.id, meeting.organization_id, meeting.processing_status, duplicate=True)
            callbacks_total.labels(outcome="invalid_token").inc()
            raise InvalidCallbackTokenError("Invalid callback token")

        await session.refresh(meeting)
        callbacks_total.labels(outcome=result.status).inc()
        logger.info(
            "callback_applied",
            status=result.status,
            has_participants="participants" in values,
            has_timestamped_transcript="timestamped_transcript" in values,
        )
        return CallbackOutcome(meeting.id, meeting.organization_id, result.status)
