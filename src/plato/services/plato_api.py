# src/plato/services/plato_api.py

"""
HTTP client setup for the Plato backend.
"""

import logging
import os
from typing import Mapping, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "http://localhost:5000/api"


def api_base_url() -> str:
    return os.getenv("PLATO_API_BASE_URL", DEFAULT_API_BASE_URL).rstrip("/")


def create_api_client(
    base_url: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Build an AsyncClient pointed at the Plato backend.

    Args:
        base_url: Backend base URL (defaults to PLATO_API_BASE_URL)
        headers: Caller credentials to forward (Cookie / Authorization)
        transport: Optional transport override

    Returns:
        An httpx.AsyncClient; the caller owns closing it
    """
    timeout = float(os.getenv("PLATO_HTTP_TIMEOUT_SECONDS", "10"))
    return httpx.AsyncClient(
        base_url=base_url or api_base_url(),
        headers=dict(headers or {}),
        timeout=timeout,
        transport=transport,
    )


def error_message(response: httpx.Response) -> Optional[str]:
    """Pull the JSON `message` out of an error response, if there is one."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return None


def short_token(token: str) -> str:
    """Token prefix that is safe to log."""
    return f"{token[:4]}..."
