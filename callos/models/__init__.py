"""
Database models package.
Import all models here for easy access and Alembic auto-detection.
"""
from callos.models.base import Base
from callos.models.organization import Organization, OrganizationContext, Profile, UserRole
from callos.models.meeting_type import (
    MeetingType,
    MeetingTypeAttribute,
    MeetingTypeCheckpoint,
    MeetingTypeCriterion,
    PipedriveScenario,
    LivespaceScenario,
)
from callos.models.meeting import Meeting, ProcessingStatus
from callos.models.integrations import (
    CrmIntegration,
    CrmCredentials,
    CrmFieldMapping,
    CrmSyncLog,
    FirefliesCredential,
    TelnyxCredential,
    GoogleIntegration,
)
from callos.models.webhooks import WebhookEndpoint, WebhookLog

__all__ = [
    'Base',
    'Organization',
    'OrganizationContext',
    'Profile',
    'UserRole',
    'MeetingType',
    'MeetingTypeAttribute',
    'MeetingTypeCheckpoint',
    'MeetingTypeCriterion',
    'PipedriveScenario',
    'LivespaceScenario',
    'Meeting',
    'ProcessingStatus',
    'CrmIntegration',
    'CrmCredentials',
    'CrmFieldMapping',
    'CrmSyncLog',
    'FirefliesCredential',
    'TelnyxCredential',
    'GoogleIntegration',
    'WebhookEndpoint',
    'WebhookLog',
]
