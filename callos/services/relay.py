"""
Webhook relay pipeline.

Inbound provider webhooks become pending meetings, get enriched by the
payload builder and are forwarded to the organization's automation
endpoint. Every relay attempt appends one ``webhook_logs`` row; the row is
committed before any forward failure is raised so the audit trail survives.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callos import http_client
from callos.config import settings
from callos.exceptions import (
    CallosError,
    ConfigurationError,
    ForwardError,
    InvalidRequestError,
    NotFoundError,
)
from callos.logging_config import LogContext, get_logger
from callos.models import Meeting, Organization, ProcessingStatus, WebhookEndpoint, WebhookLog
from callos.monitoring import forward_duration, webhook_relays_total
from callos.services.auth_service import AuthenticatedUser, require_super_admin
from callos.services.matcher import match_meeting_type
from callos.services.payload_builder import build_payload, load_meeting

logger = get_logger(__name__)

TELNYX_PROCESSED_EVENT = "call.hangup"
TOKEN_SOURCE_PREFIXES = {"fir_": "fireflies", "tel_": "telnyx"}


@dataclass
class ForwardResult:
    url: str
    status_code: Optional[int]
    body: Any
    duration_ms: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code is not None and 200 <= self.status_code < 300


def detect_source(token: str, endpoint: WebhookEndpoint) -> str:
    for prefix, source in TOKEN_SOURCE_PREFIXES.items():
        if token.startswith(prefix):
            return source
    return endpoint.endpoint_type or "unknown"


def telnyx_event_type(payload: Any) -> Optional[str]:
    """Telnyx posts either one event or a list of events; the first one counts."""
    event = payload[0] if isinstance(payload, list) and payload else payload
    if not isinstance(event, dict):
        return None
    data = event.get("data")
    if not isinstance(data, dict):
        return None
    return data.get("event_type")


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text[:2000]} if response.text else None


async def forward_payload(
    http: httpx.AsyncClient,
    url: str,
    payload: Dict[str, Any],
    source_type: str,
    timeout: Optional[float] = None,
) -> ForwardResult:
    """
    POST the assembled document to the automation endpoint.

    Network failures are returned in the result rather than raised, so the
    caller can log the attempt first.
    """
    started = time.monotonic()
    try:
        options = {"timeout": timeout} if timeout is not None else {}
        response = await http.post(url, json=payload, **options)
    except httpx.HTTPError as e:
        duration_ms = int((time.monotonic() - started) * 1000)
        webhook_relays_total.labels(source_type=source_type, status="error").inc()
        logger.error("forward_failed", url=url, error=str(e) or type(e).__name__)
        return ForwardResult(url, None, None, duration_ms, error=str(e) or type(e).__name__)

    elapsed = time.monotonic() - started
    forward_duration.labels(source_type=source_type).observe(elapsed)
    result = ForwardResult(url, response.status_code, _response_body(response), int(elapsed * 1000))
    webhook_relays_total.labels(source_type=source_type, status="forwarded" if result.ok else "failed").inc()
    logger.info("forward_completed", url=url, status=response.status_code, duration_ms=result.duration_ms)
    return result


async def forward_in_background(url: str, payload: Dict[str, Any], source_type: str, meeting_id: str) -> None:
    """Fire-and-forget forward; outcomes are only logged."""
    with LogContext(meeting_id=meeting_id):
        async with http_client.create_http_client() as http:
            result = await forward_payload(http, url, payload, source_type)
        if not result.ok:
            logger.error("background_forward_failed", status=result.status_code, error=result.error)


class RelayService:
    """Meeting creation, enrichment, forwarding and audit logging for one request."""

    def __init__(self, session: AsyncSession, http: httpx.AsyncClient):
        self.session = session
        self.http = http

    async def find_endpoint(
        self,
        endpoint_type: Optional[str] = None,
        webhook_token: Optional[str] = None,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> Optional[WebhookEndpoint]:
        query = select(WebhookEndpoint).where(WebhookEndpoint.is_active.is_(True))
        if webhook_token is not None:
            query = query.where(WebhookEndpoint.webhook_token == webhook_token)
        if endpoint_type is not None:
            query = query.where(WebhookEndpoint.endpoint_type == endpoint_type)
        if user_id is not None:
            query = query.where(WebhookEndpoint.user_id == user_id)
        if organization_id is not None:
            query = query.where(WebhookEndpoint.organization_id == organization_id)
        result = await self.session.execute(query.order_by(WebhookEndpoint.created_at).limit(1))
        return result.scalar_one_or_none()

    async def get_target_url(self, organization_id: str) -> Optional[str]:
        organization = await self.session.get(Organization, organization_id)
        return organization.webhook_target_url if organization else None

    async def create_meeting(
        self,
        organization_id: str,
        user_id: str,
        payload: Any,
        source: str,
        title: str,
        transcript_source: Optional[str] = None,
    ) -> Meeting:
        meeting = Meeting(
            organization_id=organization_id,
            user_id=user_id,
            title=title,
            transcript="",
            transcript_source=transcript_source or source,
            webhook_source=source,
            webhook_metadata=payload,
            processing_status=ProcessingStatus.PENDING,
        )
        self.session.add(meeting)
        await self.session.flush()
        logger.info("meeting_created", meeting_id=meeting.id, source=source)
        return meeting

    async def pre_match(self, meeting: Meeting, deal_data: Optional[Dict[str, Any]]) -> Optional[str]:
        if not deal_data:
            return None
        result = await match_meeting_type(self.session, meeting.organization_id, deal_data)
        if result.meeting_type_id:
            meeting.meeting_type_id = result.meeting_type_id
            await self.session.flush()
        return result.meeting_type_id

    async def mark_processing(self, meeting: Meeting) -> None:
        meeting.processing_status = ProcessingStatus.PROCESSING
        meeting.processing_started_at = datetime.now(timezone.utc)
        await self.session.flush()

    async def record(
        self,
        source_type: str,
        status: str,
        request_payload: Any = None,
        response_payload: Any = None,
        http_status: Optional[int] = None,
        duration_ms: Optional[int] = None,
        forwarded_to: Optional[str] = None,
        error_message: Optional[str] = None,
        endpoint: Optional[WebhookEndpoint] = None,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> WebhookLog:
        """Append one audit row and commit it."""
        log = WebhookLog(
            webhook_endpoint_id=endpoint.id if endpoint else None,
            user_id=user_id,
            organization_id=organization_id,
            source_type=source_type,
            status=status,
            http_status=http_status,
            duration_ms=duration_ms,
            forwarded_to=forwarded_to,
            request_payload=request_payload,
            response_payload=response_payload,
            error_message=error_message,
        )
        self.session.add(log)
        await self.session.commit()
        return log

    async def relay_token_webhook(self, token: str, payload: Any) -> Dict[str, Any]:
        """
        Handle ``wh/{token}``: create a meeting, enrich it and prepare the forward.

        The forward itself is left to the caller to run in the background;
        the returned dict carries it under ``forward`` when one is due.
        """
        started = time.monotonic()
        endpoint = await self.find_endpoint(webhook_token=token)
        if endpoint is None:
            raise NotFoundError("Invalid or inactive token")

        source = detect_source(token, endpoint)
        with LogContext(organization_id=endpoint.organization_id, source=source):
            if source == "telnyx":
                event_type = telnyx_event_type(payload)
                if event_type != TELNYX_PROCESSED_EVENT:
                    webhook_relays_total.labels(source_type=source, status="ignored").inc()
                    logger.info("telnyx_event_ignored", event_type=event_type)
                    return {
                        "success": True,
                        "ignored": True,
                        "message": (
                            f"Event type '{event_type}' acknowledged but not processed. "
                            f"Only '{TELNYX_PROCESSED_EVENT}' events are processed."
                        ),
                    }

            meeting = await self.create_meeting(
                endpoint.organization_id,
                endpoint.user_id,
                payload,
                source,
                title=f"{source} - {datetime.now(timezone.utc).isoformat()}",
            )
            if isinstance(payload, dict):
                await self.pre_match(meeting, payload.get("deal_data"))

            forward = None
            error_message = None
            target_url = await self.get_target_url(endpoint.organization_id)
            try:
                document = await build_payload(self.session, self.http, meeting.id)
            except (NotFoundError, ConfigurationError) as e:
                error_message = e.message
                logger.error("payload_preparation_failed", meeting_id=meeting.id, error=e.message)
            else:
                if target_url:
                    await self.mark_processing(meeting)
                    forward = {"url": target_url, "payload": document, "source_type": source, "meeting_id": meeting.id}
                else:
                    logger.info("no_webhook_target_url", organization_id=endpoint.organization_id)

            await self.record(
                source_type=source,
                status="success",
                request_payload=payload,
                response_payload={"meeting_id": meeting.id},
                http_status=200,
                duration_ms=int((time.monotonic() - started) * 1000),
                forwarded_to=target_url if forward else None,
                error_message=error_message,
                endpoint=endpoint,
                user_id=endpoint.user_id,
                organization_id=endpoint.organization_id,
            )

            return {
                "success": True,
                "meeting_id": meeting.id,
                "message": "Meeting created and processing started",
                "source": source,
                "forward": forward,
            }

    async def relay_user_webhook(self, user_id: str, payload: Any) -> Dict[str, Any]:
        """Handle ``webhook-user/{user_id}`` with a synchronous forward."""
        started = time.monotonic()
        endpoint = await self.find_endpoint(endpoint_type="user", user_id=user_id)
        if endpoint is None:
            raise NotFoundError("No active webhook endpoint found for this user")

        with LogContext(organization_id=endpoint.organization_id, user_id=user_id):
            meeting = await self.create_meeting(
                endpoint.organization_id,
                user_id,
                payload,
                source="user",
                title="Processing...",
                transcript_source="webhook",
            )
            if isinstance(payload, dict):
                await self.pre_match(meeting, payload.get("deal_data"))

            try:
                document = await build_payload(self.session, self.http, meeting.id)
            except CallosError as e:
                logger.error("payload_preparation_failed", meeting_id=meeting.id, error=e.message)
                await self.record(
                    source_type="user",
                    status="failed",
                    request_payload=payload,
                    response_payload={"meeting_id": meeting.id},
                    http_status=e.status_code,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    error_message=e.message,
                    endpoint=endpoint,
                    user_id=user_id,
                    organization_id=endpoint.organization_id,
                )
                raise
            logger.info("payload_ready", meeting_id=meeting.id, meeting_types=len(document["meeting_types"]))

            target_url = await self.get_target_url(endpoint.organization_id)
            result = None
            if target_url:
                await self.mark_processing(meeting)
                result = await forward_payload(self.http, target_url, document, "user")

            await self.record(
                source_type="user",
                status="success" if result is None or result.ok else "failed",
                request_payload=payload,
                response_payload=result.body if result else None,
                http_status=result.status_code if result else 200,
                duration_ms=int((time.monotonic() - started) * 1000),
                forwarded_to=target_url,
                error_message=result.error if result else None,
                endpoint=endpoint,
                user_id=user_id,
                organization_id=endpoint.organization_id,
            )
            if result is not None and result.error:
                raise ForwardError(f"Failed to forward to automation endpoint: {result.error}")

            return {
                "success": True,
                "meeting_id": meeting.id,
                "forwarded": bool(target_url),
                "forward_status": result.status_code if result else 200,
            }

    async def relay_organization_webhook(self, organization_id: str, payload: Any) -> Dict[str, Any]:
        """
        Handle ``webhook-org/{organization_id}`` for an existing meeting.

        Once the endpoint is resolved, every rejection is written to the
        audit trail before it is raised.
        """
        started = time.monotonic()
        if not isinstance(payload, dict) or not payload.get("meeting_id"):
            raise InvalidRequestError("meeting_id is required")

        endpoint = await self.find_endpoint(endpoint_type="organization", organization_id=organization_id)
        if endpoint is None:
            raise NotFoundError("Organization endpoint not found")

        meeting_id = payload["meeting_id"]
        target_url = await self.get_target_url(organization_id)
        with LogContext(organization_id=organization_id, meeting_id=meeting_id):
            try:
                if not target_url:
                    raise ConfigurationError("Organization webhook target URL not configured")
                meeting = await load_meeting(self.session, meeting_id)
                if meeting.processing_status == ProcessingStatus.COMPLETED:
                    raise InvalidRequestError("Meeting already completed")
                document = await build_payload(self.session, self.http, meeting_id)
            except CallosError as e:
                logger.error("organization_relay_rejected", error=e.message)
                await self.record(
                    source_type="user_endpoint",
                    status="failed",
                    request_payload=payload,
                    http_status=e.status_code,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    forwarded_to=target_url,
                    error_message=e.message,
                    endpoint=endpoint,
                    user_id=payload.get("user_id"),
                    organization_id=organization_id,
                )
                raise

            await self.mark_processing(meeting)
            result = await forward_payload(
                self.http, target_url, document, "user_endpoint", timeout=settings.forward_timeout_seconds
            )
            await self.record(
                source_type="user_endpoint",
                status="forwarded" if result.ok else "failed",
                request_payload=document,
                response_payload=result.body,
                http_status=result.status_code,
                duration_ms=int((time.monotonic() - started) * 1000),
                forwarded_to=target_url,
                error_message=None if result.ok else (result.error or f"HTTP {result.status_code}"),
                endpoint=endpoint,
                user_id=payload.get("user_id"),
                organization_id=organization_id,
            )
            if result.error:
                raise ForwardError(f"Failed to forward to automation endpoint: {result.error}")

            return {
                "success": True,
                "message": "Webhook forwarded to organization target URL",
                "forwarded_to": target_url,
                "forward_status": result.status_code,
            }

    async def relay_global_webhook(self, payload: Any) -> Dict[str, Any]:
        """Handle ``webhook-global``: pass the raw payload on to the global target, best effort."""
        started = time.monotonic()
        endpoint = await self.find_endpoint(endpoint_type="global")
        if endpoint is None:
            raise NotFoundError("Global endpoint not found")

        body = payload if isinstance(payload, dict) else {}
        request = body.get("request") if isinstance(body.get("request"), dict) else {}

        result = None
        if endpoint.target_url:
            result = await forward_payload(self.http, endpoint.target_url, payload, "org_endpoint")
            if not result.ok:
                logger.warning("global_forward_failed", status=result.status_code, error=result.error)

        await self.record(
            source_type="org_endpoint",
            status="success",
            request_payload=payload,
            response_payload=result.body if result else None,
            http_status=200,
            duration_ms=int((time.monotonic() - started) * 1000),
            forwarded_to=endpoint.target_url,
            error_message=result.error if result else None,
            endpoint=endpoint,
            user_id=body.get("user_id"),
            organization_id=body.get("organization_id"),
        )

        return {
            "success": True,
            "message": "Webhook processed successfully",
            "data": {
                "user_id": body.get("user_id"),
                "organization_id": body.get("organization_id"),
                "transcript_id": request.get("transcript_id"),
                "forwarded": bool(endpoint.target_url),
            },
        }

    async def retry_forward(self, user: AuthenticatedUser, meeting_id: str) -> Dict[str, Any]:
        """
        Re-run assembly and forward for an existing meeting (super admins only).

        Raises:
            PermissionDeniedError: For non super admins
            NotFoundError: Unknown meeting or organization
            InvalidRequestError: Completed meeting or no webhook_target_url
        """
        if not meeting_id:
            raise InvalidRequestError("meeting_id is required")
        await require_super_admin(self.session, user)

        meeting = await load_meeting(self.session, meeting_id)
        organization = await self.session.get(Organization, meeting.organization_id)
        if organization is None:
            raise NotFoundError("Organization not found")
        if not organization.webhook_target_url:
            raise InvalidRequestError("No webhook URL configured for this organization")
        if meeting.processing_status == ProcessingStatus.COMPLETED:
            raise InvalidRequestError("Meeting already completed")

        with LogContext(meeting_id=meeting.id, organization_id=organization.id, triggered_by=user.id):
            logger.info("admin_retry_started")
            document = await build_payload(self.session, self.http, meeting.id)
            result = await forward_payload(
                self.http,
                organization.webhook_target_url,
                document,
                "admin_retry",
                timeout=settings.forward_timeout_seconds,
            )
            await self.mark_processing(meeting)

            await self.record(
                source_type="admin_retry",
                status="success" if result.ok else "failed",
                request_payload={"meeting_id": meeting.id, "retry": True, "triggered_by": user.id},
                response_payload=result.body,
                http_status=result.status_code,
                duration_ms=result.duration_ms,
                forwarded_to=organization.webhook_target_url,
                error_message=result.error,
                user_id=user.id,
                organization_id=meeting.organization_id,
            )
            if result.error:
                raise ForwardError(f"Failed to forward to automation endpoint: {result.error}")

            return {
                "success": True,
                "message": "Retry sent to n8n",
                "n8n_status": result.status_code,
                "organization": organization.name,
                "meeting_title": meeting.title,
            }
