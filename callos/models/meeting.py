"""
Meeting model and its processing lifecycle.
"""
from sqlalchemy import Column, String, Integer, Float, Text, DateTime, JSON, ForeignKey
from sqlalchemy.orm import relationship
from callos.models.base import Base, new_uuid, utcnow


class ProcessingStatus:
    """pending -> processing -> completed | failed; completed is terminal."""
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'


class Meeting(Base):
    """A recorded meeting awaiting or holding its analysis result."""

    __tablename__ = 'meetings'

    id = Column(String(36), primary_key=True, default=new_uuid)
    organization_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    meeting_type_id = Column(String(36), ForeignKey('meeting_types.id', ondelete='SET NULL'), nullable=True)
    title = Column(String(500), nullable=True)
    transcript = Column(Text, nullable=True)
    transcript_source = Column(String(50), nullable=True)
    meeting_date = Column(String(50), nullable=True)  # ISO timestamp as received
    duration = Column(Integer, nullable=True)  # minutes
    processing_status = Column(String(50), nullable=False, default=ProcessingStatus.PENDING, index=True)
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    processing_completed_at = Column(DateTime(timezone=True), nullable=True)
    callback_token = Column(String(255), nullable=True)  # set only while awaiting a callback
    webhook_source = Column(String(50), nullable=True)
    webhook_metadata = Column(JSON, nullable=True)  # raw inbound payload
    analysis_data = Column(JSON, nullable=True)
    overall_score = Column(Float, nullable=True)
    fireflies_id = Column(String(255), nullable=True)
    audio_url = Column(Text, nullable=True)
    participants = Column(JSON, nullable=True)
    audio_metadata = Column(JSON, nullable=True)
    timestamped_transcript = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    meeting_type = relationship("MeetingType", lazy="selectin")

    def __repr__(self):
        return f"<Meeting(id='{self.id}', status='{self.processing_status}')>"
