"""
Invitation token resolver.

Looks an invitation token up on the Plato backend and returns an immutable
Invitation snapshot. Every failure collapses into InvalidInvitationError so
backend error bodies never reach the user; resolution is never retried.
"""

import logging
from urllib.parse import quote

import httpx
from opentelemetry import trace

from plato.metrics import invitation_backend_failures_total
from plato.models.invitation import Invitation
from plato.services.exceptions import InvalidInvitationError, MissingTokenError
from plato.services.plato_api import short_token

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class InvitationResolver:
    """Resolves invitation tokens via GET /invitations/public/{token}."""

    def __init__(self, client: httpx.AsyncClient, path: str = "/invitations/public"):
        self.client = client
        self.path = path.rstrip("/")

    async def resolve(self, token: str) -> Invitation:
        """
        Resolve a token into an invitation.

        Args:
            token: Opaque invitation token

        Returns:
            Invitation snapshot (pending and unexpired)

        Raises:
            MissingTokenError: If token is empty
            InvalidInvitationError: If the token does not resolve to a usable invitation
        """
        if not token or not token.strip():
            raise MissingTokenError()

        with tracer.start_as_current_span("invitation.resolve") as span:
            span.set_attribute("token.prefix", short_token(token))

            try:
                response = await self.client.get(f"{self.path}/{quote(token, safe='')}")
            except httpx.HTTPError as e:
                logger.warning(f"Invitation lookup for {short_token(token)} failed: {e}")
                invitation_backend_failures_total.labels(operation="resolve", reason="transport").inc()
                raise InvalidInvitationError() from e

            span.set_attribute("http.status_code", response.status_code)

            if not response.is_success:
                logger.info(
                    f"Invitation lookup for {short_token(token)} returned {response.status_code}"
                )
                logger.debug(f"Invitation lookup body: {response.text[:500]}")
                invitation_backend_failures_total.labels(
                    operation="resolve", reason=str(response.status_code)
                ).inc()
                raise InvalidInvitationError()

            try:
                invitation = Invitation.from_payload(response.json(), token)
            except ValueError as e:
                logger.error(f"Unreadable invitation payload for {short_token(token)}: {e}")
                invitation_backend_failures_total.labels(operation="resolve", reason="payload").inc()
                raise InvalidInvitationError() from e

            if not invitation.is_usable:
                logger.info(
                    f"Invitation {short_token(token)} is not usable "
                    f"(status={invitation.status.value}, expired={invitation.is_expired})"
                )
                raise InvalidInvitationError()

            logger.info(
                f"Resolved invitation {short_token(token)} for organization "
                f"{invitation.organization_id} as {invitation.role}"
            )
            return invitation
