"""
Livespace API client with its two signature schemes.

Livespace accounts in the wild answer to one of two auth schemes:

* legacy - ``sha1(api_key + api_secret + json(params))`` sent in
  ``X-Api-Key`` / ``X-Api-Signature`` headers with a JSON body.
* session - a ``getToken`` call yields ``token`` + ``session_id``; the
  method call is then form-encoded and signed with
  ``sha1(api_key + token + api_secret)``.

Both are :class:`CrmAuthStrategy` implementations selected by the
``signature_variant`` stored with the credentials. A body carrying
``status: false`` or an ``error`` object is a failure even on HTTP 200.
"""
import hashlib
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import httpx

from callos.exceptions import ConfigurationError, LivespaceAPIError
from callos.logging_config import get_logger
from callos.monitoring import crm_requests_total

logger = get_logger(__name__)

TOKEN_PATH = "/api/public/json/_Api/auth_call/_api_method/getToken"
SIGNATURE_VARIANTS = ("session", "legacy")


def sha1_hex(message: str) -> str:
    return hashlib.sha1(message.encode("utf-8")).hexdigest()


def compact_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def normalize_domain(domain: str) -> str:
    """Trim, default to https:// and drop the trailing slash."""
    normalized = domain.strip()
    if not normalized.startswith(("http://", "https://")):
        normalized = "https://" + normalized
    return normalized.rstrip("/")


def method_url(domain: str, module: str, method: str) -> str:
    return f"{domain}/api/public/json/{module}/{method}"


def parse_response(response: httpx.Response, operation: str) -> Dict[str, Any]:
    """
    Decode a Livespace response and enforce logical success.

    Raises:
        LivespaceAPIError: On non-2xx, an ``error`` object or ``status: false``
    """
    if response.status_code < 200 or response.status_code >= 300:
        crm_requests_total.labels(platform="livespace", status=f"error_{response.status_code}").inc()
        logger.error("livespace_http_error", operation=operation, status=response.status_code)
        raise LivespaceAPIError(
            f"Livespace {operation} failed ({response.status_code}): {response.text[:500]}",
            upstream_status=response.status_code,
        )

    try:
        data = response.json()
    except ValueError:
        data = {"raw": response.text}

    if not isinstance(data, dict):
        return {"result": data}

    error = data.get("error")
    if error:
        crm_requests_total.labels(platform="livespace", status="logical_error").inc()
        if isinstance(error, dict):
            message = error.get("message") or compact_json(error)
            code = error.get("code")
        else:
            message, code = str(error), None
        logger.error("livespace_api_error", operation=operation, code=code)
        raise LivespaceAPIError(f"Livespace API error: {message}", upstream_status=response.status_code, code=code)

    if data.get("status") is False:
        code = data.get("result")
        crm_requests_total.labels(platform="livespace", status="logical_error").inc()
        logger.error("livespace_status_false", operation=operation, code=code)
        raise LivespaceAPIError(
            f"Livespace {operation} error: code {code}. Check API credentials.",
            upstream_status=response.status_code,
            code=code,
        )

    crm_requests_total.labels(platform="livespace", status="success").inc()
    return data


class CrmAuthStrategy(ABC):
    """Signs and sends one Livespace method call."""

    name: str

    def __init__(self, domain: str, api_key: str, api_secret: str):
        self.domain = domain
        self.api_key = api_key
        self.api_secret = api_secret

    @abstractmethod
    async def call(
        self,
        client: httpx.AsyncClient,
        module: str,
        method: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError


class LegacySignatureStrategy(CrmAuthStrategy):
    """Header-signed JSON calls."""

    name = "legacy"

    def sign(self, body: str) -> str:
        return sha1_hex(self.api_key + self.api_secret + body)

    async def call(self, client, module, method, params=None):
        body = compact_json(params or {})
        response = await client.post(
            method_url(self.domain, module, method),
            headers={
                "Content-Type": "application/json",
                "X-Api-Key": self.api_key,
                "X-Api-Signature": self.sign(body),
            },
            content=body.encode("utf-8"),
        )
        return parse_response(response, f"{module}/{method}")


class SessionTokenStrategy(CrmAuthStrategy):
    """getToken handshake followed by a form-encoded, session-signed call."""

    name = "session"

    async def get_token(self, client: httpx.AsyncClient) -> Tuple[str, str]:
        """
        Obtain a short-lived token and session id.

        Raises:
            LivespaceAPIError: If Livespace refuses the key or omits the token
        """
        logger.debug("livespace_get_token", domain=self.domain)
        response = await client.post(
            f"{self.domain}{TOKEN_PATH}",
            data={"_api_auth": "key", "_api_key": self.api_key},
        )
        data = parse_response(response, "getToken")

        # Older accounts nest the token under "data", newer ones under "result".
        token_data = data.get("result")
        if not isinstance(token_data, dict):
            token_data = data.get("data")
        if not isinstance(token_data, dict) or not token_data.get("token") or not token_data.get("session_id"):
            raise LivespaceAPIError("Livespace getToken: missing token or session_id in response")
        return token_data["token"], token_data["session_id"]

    def sign(self, token: str) -> str:
        return sha1_hex(self.api_key + token + self.api_secret)

    async def call(self, client, module, method, params=None):
        token, session_id = await self.get_token(client)

        form = {
            "_api_auth": "key",
            "_api_key": self.api_key,
            "_api_sha": self.sign(token),
            "_api_session": session_id,
        }
        for key, value in (params or {}).items():
            form[key] = value if isinstance(value, str) else compact_json(value)

        logger.info("livespace_api_call", module=module, method=method)
        response = await client.post(method_url(self.domain, module, method), data=form)
        return parse_response(response, f"{module}/{method}")


_STRATEGIES = {
    LegacySignatureStrategy.name: LegacySignatureStrategy,
    SessionTokenStrategy.name: SessionTokenStrategy,
}


def build_strategy(
    domain: Optional[str],
    api_key: Optional[str],
    api_secret: Optional[str],
    variant: Optional[str] = None,
) -> CrmAuthStrategy:
    """
    Pick the signing scheme for stored Livespace credentials.

    Raises:
        ConfigurationError: If domain, key or secret is missing, or the variant is unknown
    """
    if not domain or not api_key or not api_secret:
        raise ConfigurationError("Missing Livespace credentials (api_key, api_secret, domain)")
    strategy_cls = _STRATEGIES.get(variant or SessionTokenStrategy.name)
    if strategy_cls is None:
        raise ConfigurationError(f"Unknown Livespace signature variant: {variant}")
    return strategy_cls(normalize_domain(domain), api_key, api_secret)
