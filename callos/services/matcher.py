"""
Meeting-type resolution from CRM deal context, and the meeting-type catalog.

Scenario lookup tries four queries from most to least specific. Fields the
deal does not carry match NULL exactly: a scenario with ``stage_id = NULL``
only matches deals without a stage, it is not a wildcard.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callos.logging_config import get_logger
from callos.models import LivespaceScenario, MeetingType, PipedriveScenario

logger = get_logger(__name__)


@dataclass(frozen=True)
class DealContext:
    """Deal position in a CRM pipeline (Pipedrive) or process (Livespace)."""
    pipeline_id: str
    stage_id: Optional[str] = None
    deal_status: Optional[str] = None
    platform: str = "pipedrive"

    @classmethod
    def from_dict(cls, deal_data: Optional[Dict[str, Any]]) -> Optional["DealContext"]:
        """Build a context from a request body; None without a pipeline/process id."""
        if not deal_data:
            return None
        pipeline_id = _normalize(deal_data.get("pipeline_id"))
        platform = "pipedrive"
        if pipeline_id is None:
            pipeline_id = _normalize(deal_data.get("process_id"))
            platform = "livespace"
        if pipeline_id is None:
            return None
        return cls(
            pipeline_id=pipeline_id,
            stage_id=_normalize(deal_data.get("stage_id")),
            deal_status=_normalize(deal_data.get("deal_status")),
            platform=platform,
        )

    def candidate_keys(self) -> List[Tuple[Optional[str], Optional[str]]]:
        """(stage_id, deal_status) pairs to try, most specific first, without repeats."""
        ordered = [
            (self.stage_id, self.deal_status),
            (self.stage_id, None),
            (None, self.deal_status),
            (None, None),
        ]
        keys = []
        for key in ordered:
            if key not in keys:
                keys.append(key)
        return keys


@dataclass
class MatchResult:
    meeting_type_id: Optional[str]
    matched: bool
    source: Optional[str] = None  # scenario, default

    def to_dict(self) -> Dict[str, Any]:
        return {"meeting_type_id": self.meeting_type_id, "matched": self.matched}


def _normalize(value: Any) -> Optional[str]:
    # CRMs send ids as ints; scenarios store them as strings.
    if value is None or value == "":
        return None
    return str(value)


def _equals_or_null(column, value: Optional[str]):
    return column.is_(None) if value is None else column == value


async def find_scenario_match(session: AsyncSession, organization_id: str, deal: DealContext) -> Optional[str]:
    if deal.platform == "livespace":
        model, pipeline_column = LivespaceScenario, LivespaceScenario.process_id
    else:
        model, pipeline_column = PipedriveScenario, PipedriveScenario.pipeline_id

    for stage_id, deal_status in deal.candidate_keys():
        result = await session.execute(
            select(model.meeting_type_id)
            .where(
                model.organization_id == organization_id,
                model.is_active.is_(True),
                pipeline_column == deal.pipeline_id,
                _equals_or_null(model.stage_id, stage_id),
                _equals_or_null(model.deal_status, deal_status),
            )
            .order_by(model.order_index)
            .limit(1)
        )
        meeting_type_id = result.scalar_one_or_none()
        if meeting_type_id:
            logger.info(
                "scenario_matched",
                platform=deal.platform,
                pipeline_id=deal.pipeline_id,
                stage_id=stage_id,
                deal_status=deal_status,
                meeting_type_id=meeting_type_id,
            )
            return meeting_type_id
    return None


async def get_default_meeting_type_id(session: AsyncSession, organization_id: str) -> Optional[str]:
    result = await session.execute(
        select(MeetingType.id)
        .where(MeetingType.organization_id == organization_id, MeetingType.is_default.is_(True))
        .order_by(MeetingType.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def match_meeting_type(
    session: AsyncSession,
    organization_id: str,
    deal_data: Optional[Dict[str, Any]] = None,
) -> MatchResult:
    """
    Resolve the meeting type for a deal, falling back to the organization default.

    No scenario and no default is a valid outcome (``matched=False``), not an error.
    """
    deal = DealContext.from_dict(deal_data)
    if deal is not None:
        meeting_type_id = await find_scenario_match(session, organization_id, deal)
        if meeting_type_id:
            return MatchResult(meeting_type_id, True, "scenario")

    default_id = await get_default_meeting_type_id(session, organization_id)
    if default_id:
        logger.info("default_meeting_type_used", organization_id=organization_id, meeting_type_id=default_id)
        return MatchResult(default_id, True, "default")

    logger.info("no_meeting_type_found", organization_id=organization_id)
    return MatchResult(None, False)


async def list_meeting_types(session: AsyncSession, organization_id: str) -> List[MeetingType]:
    result = await session.execute(
        select(MeetingType)
        .where(MeetingType.organization_id == organization_id)
        .order_by(MeetingType.name)
    )
    return list(result.scalars().all())


def serialize_meeting_type(meeting_type: MeetingType) -> Dict[str, Any]:
    """Catalog entry with child lists in ``order_index`` order."""
    return {
        "id": meeting_type.id,
        "name": meeting_type.name,
        "description": meeting_type.description,
        "is_default": meeting_type.is_default,
        "script_guidelines": meeting_type.script_guidelines,
        "success_criteria": meeting_type.success_criteria,
        "attributes": [
            {"key": a.attribute_key, "value": a.attribute_value}
            for a in sorted(meeting_type.attributes, key=lambda a: a.order_index)
        ],
        "checkpoints": [
            c.checkpoint_text for c in sorted(meeting_type.checkpoints, key=lambda c: c.order_index)
        ],
        "criteria_strings": [
            c.criterion_text for c in sorted(meeting_type.criteria_strings, key=lambda c: c.order_index)
        ],
    }
