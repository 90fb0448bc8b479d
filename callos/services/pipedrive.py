"""
Pipedrive API client using query-string token auth against the global API.
"""
from typing import Any, Dict, Optional

import httpx

from callos.config import settings
from callos.exceptions import PipedriveAPIError
from callos.logging_config import get_logger
from callos.monitoring import crm_requests_total

logger = get_logger(__name__)


class PipedriveClient:
    """Thin wrapper over the Pipedrive v1 REST API."""

    def __init__(self, client: httpx.AsyncClient, api_key: str, base_url: Optional[str] = None):
        self.client = client
        self.api_key = api_key
        self.base_url = (base_url or settings.pipedrive_api_base).rstrip("/")

    async def request(self, method: str, endpoint: str, body: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """
        Send one request; the token is merged into any query already on the endpoint.

        Raises:
            PipedriveAPIError: On a non-2xx response
        """
        url = f"{self.base_url}{endpoint}"
        logger.info("pipedrive_api_call", method=method, endpoint=endpoint.split("?")[0])

        response = await self.client.request(
            method.upper(),
            url,
            params={"api_token": self.api_key},
            json=body,
        )

        if response.status_code < 200 or response.status_code >= 300:
            crm_requests_total.labels(platform="pipedrive", status=f"error_{response.status_code}").inc()
            logger.error("pipedrive_http_error", endpoint=endpoint.split("?")[0], status=response.status_code)
            raise PipedriveAPIError(
                f"Pipedrive API error ({response.status_code}): {response.text[:500]}",
                upstream_status=response.status_code,
            )

        crm_requests_total.labels(platform="pipedrive", status="success").inc()
        return response

    async def get_current_user(self) -> Dict[str, Any]:
        """Verify the key via /users/me."""
        response = await self.request("GET", "/users/me")
        data = response.json()
        if not data.get("success"):
            raise PipedriveAPIError("Invalid Pipedrive API key")
        return data.get("data") or {}

    async def create_activity(self, activity: Dict[str, Any]) -> str:
        """Create an activity and return its id."""
        response = await self.request("POST", "/activities", body=activity)
        data = (response.json() or {}).get("data") or {}
        if data.get("id") is None:
            raise PipedriveAPIError("Pipedrive did not return an activity id")
        return str(data["id"])
