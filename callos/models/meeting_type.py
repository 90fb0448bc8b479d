"""
Meeting types, their ordered attribute lists and CRM scenarios.
"""
from sqlalchemy import Column, String, Text, Boolean, Integer, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from callos.models.base import Base, new_uuid, utcnow


class MeetingType(Base):
    """Organization-defined template for a class of meetings."""

    __tablename__ = 'meeting_types'

    id = Column(String(36), primary_key=True, default=new_uuid)
    organization_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    success_criteria = Column(Text, nullable=True)
    script_guidelines = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    attributes = relationship(
        "MeetingTypeAttribute",
        order_by="MeetingTypeAttribute.order_index",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    checkpoints = relationship(
        "MeetingTypeCheckpoint",
        order_by="MeetingTypeCheckpoint.order_index",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    criteria_strings = relationship(
        "MeetingTypeCriterion",
        order_by="MeetingTypeCriterion.order_index",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<MeetingType(id='{self.id}', name='{self.name}')>"


class MeetingTypeAttribute(Base):
    __tablename__ = 'meeting_type_attributes'

    id = Column(String(36), primary_key=True, default=new_uuid)
    meeting_type_id = Column(String(36), ForeignKey('meeting_types.id', ondelete='CASCADE'), nullable=False, index=True)
    attribute_key = Column(String(255), nullable=False)
    attribute_value = Column(Text, nullable=True)
    order_index = Column(Integer, nullable=False, default=0)


class MeetingTypeCheckpoint(Base):
    __tablename__ = 'meeting_type_checkpoints'

    id = Column(String(36), primary_key=True, default=new_uuid)
    meeting_type_id = Column(String(36), ForeignKey('meeting_types.id', ondelete='CASCADE'), nullable=False, index=True)
    checkpoint_text = Column(Text, nullable=False)
    order_index = Column(Integer, nullable=False, default=0)


class MeetingTypeCriterion(Base):
    __tablename__ = 'meeting_type_criteria_strings'

    id = Column(String(36), primary_key=True, default=new_uuid)
    meeting_type_id = Column(String(36), ForeignKey('meeting_types.id', ondelete='CASCADE'), nullable=False, index=True)
    criterion_text = Column(Text, nullable=False)
    order_index = Column(Integer, nullable=False, default=0)


class PipedriveScenario(Base):
    """Maps a Pipedrive (pipeline, stage, deal status) tuple to a meeting type."""

    __tablename__ = 'pipedrive_scenarios'

    id = Column(String(36), primary_key=True, default=new_uuid)
    organization_id = Column(String(36), nullable=False, index=True)
    meeting_type_id = Column(String(36), ForeignKey('meeting_types.id', ondelete='CASCADE'), nullable=False)
    pipeline_id = Column(String(255), nullable=False)
    stage_id = Column(String(255), nullable=True)
    deal_status = Column(String(50), nullable=True)
    order_index = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)


class LivespaceScenario(Base):
    """Maps a Livespace (process, stage, deal status) tuple to a meeting type."""

    __tablename__ = 'livespace_scenarios'

    id = Column(String(36), primary_key=True, default=new_uuid)
    organization_id = Column(String(36), nullable=False, index=True)
    meeting_type_id = Column(String(36), ForeignKey('meeting_types.id', ondelete='CASCADE'), nullable=False)
    process_id = Column(String(255), nullable=False)
    stage_id = Column(String(255), nullable=True)
    deal_status = Column(String(50), nullable=True)
    order_index = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
