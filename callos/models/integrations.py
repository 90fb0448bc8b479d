"""
Third-party integration models. Every secret column holds ciphertext.
"""
from sqlalchemy import Column, String, Integer, Text, Boolean, DateTime, JSON, UniqueConstraint
from callos.models.base import Base, new_uuid, utcnow


class CrmIntegration(Base):
    """One CRM connection per organization and platform (pipedrive | livespace)."""

    __tablename__ = 'crm_integrations'

    id = Column(String(36), primary_key=True, default=new_uuid)
    organization_id = Column(String(36), nullable=False, index=True)
    platform = Column(String(50), nullable=False)
    status = Column(String(50), nullable=False, default='pending')  # pending, connected, error
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<CrmIntegration(id='{self.id}', platform='{self.platform}', status='{self.status}')>"


class CrmCredentials(Base):
    __tablename__ = 'crm_credentials'

    id = Column(String(36), primary_key=True, default=new_uuid)
    integration_id = Column(String(36), nullable=False, unique=True, index=True)
    auth_type = Column(String(50), nullable=False, default='api_key')
    api_key_encrypted = Column(Text, nullable=True)
    api_secret_encrypted = Column(Text, nullable=True)  # livespace only
    domain = Column(String(500), nullable=True)  # livespace only
    signature_variant = Column(String(20), nullable=False, default='session')  # session | legacy


class CrmFieldMapping(Base):
    """Copies a meeting column into a CRM field during sync."""

    __tablename__ = 'crm_field_mappings'

    id = Column(String(36), primary_key=True, default=new_uuid)
    integration_id = Column(String(36), nullable=False, index=True)
    crm_object_type = Column(String(50), nullable=False)
    callos_field = Column(String(255), nullable=False)
    crm_field = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class CrmSyncLog(Base):
    __tablename__ = 'crm_sync_logs'

    id = Column(String(36), primary_key=True, default=new_uuid)
    integration_id = Column(String(36), nullable=False, index=True)
    meeting_id = Column(String(36), nullable=True, index=True)
    status = Column(String(50), nullable=False)  # success, failed
    crm_record_id = Column(String(255), nullable=True)
    error = Column(Text, nullable=True)
    objects_synced = Column(JSON, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    triggered_by = Column(String(50), nullable=False, default='manual')
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class FirefliesCredential(Base):
    __tablename__ = 'fireflies_credentials'
    __table_args__ = (UniqueConstraint('user_id', 'organization_id'),)

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    organization_id = Column(String(36), nullable=False, index=True)
    api_key_encrypted = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_validated_at = Column(DateTime(timezone=True), nullable=True)


class TelnyxCredential(Base):
    __tablename__ = 'telnyx_credentials'
    __table_args__ = (UniqueConstraint('user_id', 'organization_id'),)

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    organization_id = Column(String(36), nullable=False, index=True)
    api_key_encrypted = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_validated_at = Column(DateTime(timezone=True), nullable=True)


class GoogleIntegration(Base):
    """Per (user, organization) Google OAuth tokens and enabled services."""

    __tablename__ = 'google_integrations'
    __table_args__ = (UniqueConstraint('user_id', 'organization_id'),)

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    organization_id = Column(String(36), nullable=False, index=True)
    google_email = Column(String(255), nullable=True)
    gmail_enabled = Column(Boolean, nullable=False, default=False)
    calendar_enabled = Column(Boolean, nullable=False, default=False)
    drive_enabled = Column(Boolean, nullable=False, default=False)
    access_token_encrypted = Column(Text, nullable=True)
    refresh_token_encrypted = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<GoogleIntegration(user_id='{self.user_id}', email='{self.google_email}')>"
