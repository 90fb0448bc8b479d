"""
Pydantic models for request/response validation.

Required fields are declared optional and checked by the services, so a
missing field answers 400 with the same ``{success, error}`` body as every
other caller error.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional


class ErrorResponse(BaseModel):
    """Error response model."""
    success: bool = False
    error: str
    code: Optional[Any] = None


class MeetingIdRequest(BaseModel):
    meeting_id: Optional[str] = None


class MatchMeetingTypeRequest(BaseModel):
    organization_id: Optional[str] = None
    deal_data: Optional[Dict[str, Any]] = None


class MatchMeetingTypeResponse(BaseModel):
    success: bool = True
    meeting_type_id: Optional[str] = None
    matched: bool


class OrganizationRequest(BaseModel):
    organization_id: Optional[str] = None


class MeetingTypeList(BaseModel):
    success: bool = True
    meeting_types: List[Dict[str, Any]]


class GoogleTokenRequest(BaseModel):
    user_id: Optional[str] = None
    organization_id: Optional[str] = None


class GoogleTokenResponse(BaseModel):
    """Access token handed to internal callers."""
    success: bool = True
    access_token: Optional[str] = None
    refreshed: bool
    expires_at: Optional[str] = None


class IntegrationRequest(BaseModel):
    integration_id: Optional[str] = None


class PipedriveProxyRequest(BaseModel):
    integration_id: Optional[str] = None
    endpoint: Optional[str] = None
    method: str = "GET"
    body: Optional[Dict[str, Any]] = None


class LivespaceProxyRequest(BaseModel):
    integration_id: Optional[str] = None
    module: Optional[str] = None
    method: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)


class StoreCrmCredentialsRequest(BaseModel):
    integration_id: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    domain: Optional[str] = None
    platform: Optional[str] = None
    signature_variant: Optional[str] = Field(None, description="session (default) or legacy, Livespace only")


class ProviderKeyRequest(BaseModel):
    """Fireflies / Telnyx key submission; accepts camelCase from the web app."""
    model_config = ConfigDict(populate_by_name=True)

    api_key: Optional[str] = Field(None, alias="apiKey")
    user_id: Optional[str] = Field(None, alias="userId")
    organization_id: Optional[str] = Field(None, alias="organizationId")


class SyncToCrmRequest(BaseModel):
    meeting_id: Optional[str] = None
    integration_id: Optional[str] = None


class UpdateMeetingAnalysisRequest(BaseModel):
    """Only the fields present in the body are written."""
    meeting_id: Optional[str] = None
    analysis_data: Optional[Any] = None
    overall_score: Optional[float] = None
    meeting_type_id: Optional[str] = None


class HealthCheck(BaseModel):
    """Health check response."""
    status: str
    database: str
    timestamp: str
