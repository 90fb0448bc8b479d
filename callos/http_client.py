"""
Outbound HTTP client factory shared by handlers and background tasks.
"""
from typing import AsyncGenerator, Optional
import httpx

from callos.config import settings


def create_http_client(timeout: Optional[float] = None) -> httpx.AsyncClient:
    """Create an AsyncClient with the configured default timeout."""
    return httpx.AsyncClient(timeout=timeout or settings.request_timeout_seconds)


async def get_http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    """FastAPI dependency yielding one client per request."""
    async with create_http_client() as client:
        yield client
