"""
Session probe - asks the backend who the caller is.

Being signed out is a normal answer, not an error. Only an unreachable or
failing auth backend raises, so callers can offer a retry instead of bouncing
the user to the login page.
"""

import logging
from typing import Optional

import httpx
from opentelemetry import trace

from plato.metrics import invitation_backend_failures_total
from plato.models.session import AuthSession
from plato.services.exceptions import SessionProbeTransportError
from plato.services.query_cache import QueryCache

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CURRENT_USER_KEY = "/auth/user"


class SessionProbe:
    """Determines whether the current caller is authenticated."""

    def __init__(self, client: httpx.AsyncClient, cache: Optional[QueryCache] = None):
        self.client = client
        self.cache = cache

    async def probe(self) -> AuthSession:
        """
        Check the caller's session.

        Always asks the backend. The cache only receives the fresh answer;
        signing out drops the cached user.

        Returns:
            AuthSession (authenticated or anonymous)

        Raises:
            SessionProbeTransportError: If the auth backend is unreachable or failing
        """
        with tracer.start_as_current_span("session.probe") as span:
            user = await self._fetch_user()

            if user is None:
                if self.cache is not None:
                    self.cache.invalidate(CURRENT_USER_KEY)
                span.set_attribute("session.authenticated", False)
                return AuthSession.anonymous()

            if self.cache is not None:
                self.cache.set(CURRENT_USER_KEY, user)

            user_id = user.get("id") if isinstance(user, dict) else None
            span.set_attribute("session.authenticated", True)
            logger.debug(f"Authenticated user: {user_id}")
            return AuthSession(
                is_authenticated=True,
                user_id=str(user_id) if user_id is not None else None,
            )

    async def _fetch_user(self) -> Optional[dict]:
        """Return the current user JSON, or None when signed out."""
        try:
            response = await self.client.get(CURRENT_USER_KEY)
        except httpx.HTTPError as e:
            logger.warning(f"Session probe failed: {e}")
            invitation_backend_failures_total.labels(operation="probe", reason="transport").inc()
            raise SessionProbeTransportError() from e

        if response.status_code in (401, 403):
            logger.info("Caller is not signed in")
            return None

        if not response.is_success:
            logger.error(f"Session probe returned {response.status_code}")
            invitation_backend_failures_total.labels(
                operation="probe", reason=str(response.status_code)
            ).inc()
            raise SessionProbeTransportError()

        try:
            user = response.json()
        except ValueError as e:
            logger.error(f"Session probe returned unreadable body: {e}")
            invitation_backend_failures_total.labels(operation="probe", reason="payload").inc()
            raise SessionProbeTransportError() from e

        return user if isinstance(user, dict) else {}
