"""
Webhook endpoint configuration and the append-only relay audit trail.
"""
from sqlalchemy import Column, String, Integer, Text, Boolean, DateTime, JSON
from callos.models.base import Base, new_uuid, utcnow


class WebhookEndpoint(Base):
    """Inbound endpoint of type user, organization or global."""

    __tablename__ = 'webhook_endpoints'

    id = Column(String(36), primary_key=True, default=new_uuid)
    webhook_token = Column(String(255), nullable=True, unique=True, index=True)
    endpoint_type = Column(String(50), nullable=False)  # user, organization, global, fireflies, telnyx
    user_id = Column(String(36), nullable=True, index=True)
    organization_id = Column(String(36), nullable=True, index=True)
    target_url = Column(Text, nullable=True)
    endpoint_metadata = Column("metadata", JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<WebhookEndpoint(id='{self.id}', type='{self.endpoint_type}')>"


class WebhookLog(Base):
    """One row per relay attempt, success or failure."""

    __tablename__ = 'webhook_logs'

    id = Column(String(36), primary_key=True, default=new_uuid)
    webhook_endpoint_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(36), nullable=True)
    organization_id = Column(String(36), nullable=True, index=True)
    source_type = Column(String(50), nullable=False)
    status = Column(String(50), nullable=False)  # success, forwarded, failed
    http_status = Column(Integer, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    forwarded_to = Column(Text, nullable=True)
    request_payload = Column(JSON, nullable=True)
    response_payload = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
