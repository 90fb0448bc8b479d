"""
Callos Functions - API Routes

Every function is one POST route. Provider webhooks authenticate with a
path token or an active endpoint row, internal calls with the service role
key, and the web app with a user bearer token.
"""
import json
import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from callos.database import get_session
from callos.exceptions import AuthenticationError, InvalidRequestError, NotFoundError
from callos.http_client import get_http_client
from callos.logging_config import get_logger
from callos.models import ProcessingStatus
from callos.monitoring import get_metrics
from callos.schemas import (
    GoogleTokenRequest,
    GoogleTokenResponse,
    HealthCheck,
    IntegrationRequest,
    LivespaceProxyRequest,
    MatchMeetingTypeRequest,
    MatchMeetingTypeResponse,
    MeetingIdRequest,
    MeetingTypeList,
    OrganizationRequest,
    PipedriveProxyRequest,
    ProviderKeyRequest,
    StoreCrmCredentialsRequest,
    SyncToCrmRequest,
    UpdateMeetingAnalysisRequest,
)
from callos.services import crm_sync
from callos.services.auth_service import (
    AuthenticatedUser,
    extract_bearer_token,
    is_service_key,
    require_organization_member,
    verify_user_token,
)
from callos.services.callback import apply_callback
from callos.services.crm_client import (
    LIVESPACE,
    PIPEDRIVE,
    call_crm,
    check_connection,
    get_connected_integration,
    store_credentials,
)
from callos.services.google_oauth import get_google_integration, get_valid_access_token
from callos.services.matcher import list_meeting_types, match_meeting_type, serialize_meeting_type
from callos.services.meetings import UPDATABLE_FIELDS, update_meeting_analysis
from callos.services.payload_builder import build_payload
from callos.services.provider_keys import save_fireflies_key, save_telnyx_key
from callos.services.relay import RelayService, forward_in_background

logger = get_logger(__name__)


# ============================================
# CREATE API ROUTER
# ============================================

router = APIRouter()


# ============================================
# DEPENDENCY INJECTION
# ============================================

async def get_current_user(
    authorization: Optional[str] = Header(None),
    http: httpx.AsyncClient = Depends(get_http_client),
) -> AuthenticatedUser:
    """
    Resolve the calling user from the bearer token.

    Raises:
        AuthenticationError: If the token is missing or rejected
    """
    token = extract_bearer_token(authorization)
    return await verify_user_token(http, token)


async def require_service_key(authorization: Optional[str] = Header(None)) -> None:
    """Allow only internal callers presenting the service role key."""
    token = extract_bearer_token(authorization)
    if not is_service_key(token):
        raise AuthenticationError("Unauthorized")


async def get_caller(
    authorization: Optional[str] = Header(None),
    http: httpx.AsyncClient = Depends(get_http_client),
) -> Optional[AuthenticatedUser]:
    """The calling user, or None for a service-key call."""
    token = extract_bearer_token(authorization)
    if is_service_key(token):
        return None
    return await verify_user_token(http, token)


async def read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise InvalidRequestError("Invalid JSON payload")


# ============================================
# WEBHOOK RELAY ROUTES
# ============================================

@router.post("/wh/{webhook_token}")
async def token_webhook(
    webhook_token: str,
    request: Request,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    """Provider webhook addressed by an opaque endpoint token."""
    raw = await request.body()
    if not raw.strip():
        logger.info("test_webhook_received")
        return {"success": True, "message": "Test webhook received"}
    try:
        payload = json.loads(raw)
    except ValueError:
        raise InvalidRequestError("Invalid JSON payload")

    result = await RelayService(session, http).relay_token_webhook(webhook_token, payload)
    forward = result.pop("forward", None)
    if forward:
        background_tasks.add_task(forward_in_background, **forward)
    return result


@router.post("/webhook-user/{user_id}")
async def user_webhook(
    user_id: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    payload = await read_json(request)
    return await RelayService(session, http).relay_user_webhook(user_id, payload)


@router.post("/webhook-org/{organization_id}")
async def organization_webhook(
    organization_id: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    payload = await read_json(request)
    return await RelayService(session, http).relay_organization_webhook(organization_id, payload)


@router.post("/webhook-global")
async def global_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    payload = await read_json(request)
    return await RelayService(session, http).relay_global_webhook(payload)


# ============================================
# AUTOMATION ROUTES
# ============================================

@router.post("/prepare-n8n-payload", dependencies=[Depends(require_service_key)])
async def prepare_payload(
    body: MeetingIdRequest,
    session: AsyncSession = Depends(get_session),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    payload = await build_payload(session, http, body.meeting_id)
    return {"success": True, "payload": payload}


@router.post("/n8n-callback")
async def automation_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
):
    """Result posted back by the automation system; authorized by the one-time token."""
    started = time.monotonic()
    body = await read_json(request)
    outcome = await apply_callback(session, body)

    if outcome.duplicate:
        return {
            "success": True,
            "duplicate": True,
            "message": "Meeting already processed (duplicate callback ignored)",
        }

    await session.commit()

    if outcome.status == ProcessingStatus.COMPLETED:
        integration = await get_connected_integration(session, outcome.organization_id)
        if integration is not None:
            logger.info("crm_sync_scheduled", meeting_id=outcome.meeting_id, integration_id=integration.id)
            background_tasks.add_task(crm_sync.sync_meeting_in_background, outcome.meeting_id, integration.id)

    return {
        "success": True,
        "message": "Analysis results saved successfully",
        "meeting_id": outcome.meeting_id,
        "processing_duration_ms": int((time.monotonic() - started) * 1000),
    }


@router.post("/retry-n8n-forward")
async def retry_forward(
    body: MeetingIdRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    return await RelayService(session, http).retry_forward(user, body.meeting_id)


# ============================================
# MEETING TYPE ROUTES
# ============================================

@router.post(
    "/match-meeting-type",
    response_model=MatchMeetingTypeResponse,
    dependencies=[Depends(require_service_key)],
)
async def match_type(body: MatchMeetingTypeRequest, session: AsyncSession = Depends(get_session)):
    if not body.organization_id:
        raise InvalidRequestError("organization_id is required")
    result = await match_meeting_type(session, body.organization_id, body.deal_data)
    return MatchMeetingTypeResponse(**result.to_dict())


@router.post("/get-meeting-types", response_model=MeetingTypeList)
async def get_meeting_types(
    body: OrganizationRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    if not body.organization_id:
        raise InvalidRequestError("organization_id is required")
    await require_organization_member(session, user, body.organization_id)
    meeting_types = await list_meeting_types(session, body.organization_id)
    return MeetingTypeList(meeting_types=[serialize_meeting_type(mt) for mt in meeting_types])


# ============================================
# GOOGLE ROUTES
# ============================================

@router.post(
    "/refresh-google-token",
    response_model=GoogleTokenResponse,
    dependencies=[Depends(require_service_key)],
)
async def refresh_google_token(
    body: GoogleTokenRequest,
    session: AsyncSession = Depends(get_session),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    if not body.user_id or not body.organization_id:
        raise InvalidRequestError("user_id and organization_id are required")
    integration = await get_google_integration(session, body.user_id, body.organization_id)
    if integration is None:
        raise NotFoundError("Google integration not found")

    access_token, refreshed = await get_valid_access_token(session, http, integration)
    expires_at = integration.token_expires_at
    return GoogleTokenResponse(
        access_token=access_token,
        refreshed=refreshed,
        expires_at=expires_at.isoformat() if expires_at else None,
    )


# ============================================
# CRM ROUTES
# ============================================

@router.post("/pipedrive-proxy")
async def pipedrive_proxy(
    body: PipedriveProxyRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    if not body.integration_id or not body.endpoint:
        raise InvalidRequestError("Missing required parameters")
    return await call_crm(
        session, http, user, body.integration_id, body.endpoint,
        params=body.body, http_method=body.method, expected_platform=PIPEDRIVE,
    )


@router.post("/livespace-proxy")
async def livespace_proxy(
    body: LivespaceProxyRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    if not body.integration_id or not body.module or not body.method:
        raise InvalidRequestError("Missing required parameters: integration_id, module, method")
    return await call_crm(
        session, http, user, body.integration_id, f"{body.module}/{body.method}",
        params=body.params, http_method="POST", expected_platform=LIVESPACE,
    )


@router.post("/test-crm-connection")
async def test_crm_connection(
    body: IntegrationRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    return await check_connection(session, http, user, body.integration_id)


@router.post("/store-crm-credentials")
async def store_crm_credentials(
    body: StoreCrmCredentialsRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    return await store_credentials(
        session,
        http,
        user,
        integration_id=body.integration_id,
        api_key=body.api_key,
        api_secret=body.api_secret,
        domain=body.domain,
        platform=body.platform,
        signature_variant=body.signature_variant,
    )


@router.post("/sync-to-crm")
async def sync_to_crm(
    body: SyncToCrmRequest,
    caller: Optional[AuthenticatedUser] = Depends(get_caller),
    session: AsyncSession = Depends(get_session),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    if not body.meeting_id:
        raise InvalidRequestError("Missing meeting_id")
    return await crm_sync.sync_meeting_to_crm(
        session, http, body.meeting_id, body.integration_id, user=caller,
        triggered_by="manual" if caller else "service",
    )


# ============================================
# CREDENTIAL ROUTES
# ============================================

@router.post("/save-fireflies-key")
async def fireflies_key(
    body: ProviderKeyRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    return await save_fireflies_key(session, http, user, body.api_key, body.user_id, body.organization_id)


@router.post("/save-telnyx-key")
async def telnyx_key(
    body: ProviderKeyRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    return await save_telnyx_key(session, http, user, body.api_key, body.user_id, body.organization_id)


# ============================================
# MEETING ROUTES
# ============================================

@router.post("/update-meeting-analysis", dependencies=[Depends(require_service_key)])
async def meeting_analysis(body: UpdateMeetingAnalysisRequest, session: AsyncSession = Depends(get_session)):
    changes = body.model_dump(include=set(UPDATABLE_FIELDS) & body.model_fields_set)
    meeting = await update_meeting_analysis(session, body.meeting_id, changes)
    return {"success": True, "meeting": meeting}


# ============================================
# OPS ROUTES
# ============================================

@router.get("/health", response_model=HealthCheck)
async def health_check(session: AsyncSession = Depends(get_session)):
    """Health check endpoint."""
    try:
        await session.execute(text("SELECT 1"))
        database = "connected"
    except Exception as e:
        logger.error("health_check_database_failed", error=str(e))
        database = "unavailable"
    return HealthCheck(
        status="healthy" if database == "connected" else "degraded",
        database=database,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get("/metrics")
async def metrics():
    """Prometheus metrics."""
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)
