"""
Invitation acceptor - the backend's "join this organization" actions.

Handles:
- Accepting a magic-link invitation token
- Accepting an invite code for a given organization

A token that was already consumed (or a caller who is already a member)
comes back as AlreadyAcceptedError so the caller can treat it as done.
"""

import logging
import re

import httpx
from opentelemetry import trace

from plato.metrics import invitation_backend_failures_total
from plato.models.invitation import AcceptanceReceipt
from plato.services.exceptions import (
    AcceptFailureError,
    AlreadyAcceptedError,
    SessionExpiredError,
)
from plato.services.plato_api import error_message, short_token

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_ALREADY_DONE = re.compile(
    r"already (a )?(team )?member|already been (used|accepted)|already accepted",
    re.IGNORECASE,
)


class InvitationAcceptor:
    """Calls the accept endpoints on behalf of the signed-in caller."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def accept(self, token: str) -> AcceptanceReceipt:
        """
        Accept an invitation by token.

        Args:
            token: Invitation token

        Returns:
            AcceptanceReceipt from the backend

        Raises:
            AlreadyAcceptedError: If the token was already used by this caller
            SessionExpiredError: If the backend rejects the caller's credentials
            AcceptFailureError: For any other failure
        """
        with tracer.start_as_current_span("invitation.accept") as span:
            span.set_attribute("token.prefix", short_token(token))
            receipt = await self._post("/invitations/accept", {"token": token}, "accept")
            logger.info(
                f"Accepted invitation {short_token(token)} for organization "
                f"{receipt.organization_id}"
            )
            return receipt

    async def accept_invite_code(self, organization_id: str, invite_code: str) -> AcceptanceReceipt:
        """
        Accept an invitation using an organization ID and invite code.

        Raises:
            AlreadyAcceptedError: If the code was already used or the caller is a member
            AcceptFailureError: If either value is missing or the backend refuses
        """
        organization_id = (organization_id or "").strip()
        invite_code = (invite_code or "").strip()
        if not organization_id or not invite_code:
            raise AcceptFailureError("Both organization ID and invite code are required.")

        with tracer.start_as_current_span("invitation.accept_code") as span:
            span.set_attribute("organization.id", organization_id)
            receipt = await self._post(
                "/invitations/accept-code",
                {"orgId": organization_id, "inviteCode": invite_code},
                "accept_code",
            )
            logger.info(f"Accepted invite code for organization {organization_id}")
            return receipt

    async def _post(self, path: str, body: dict, operation: str) -> AcceptanceReceipt:
        try:
            response = await self.client.post(path, json=body)
        except httpx.HTTPError as e:
            logger.warning(f"{operation} request failed: {e}")
            invitation_backend_failures_total.labels(operation=operation, reason="transport").inc()
            raise AcceptFailureError() from e

        if response.is_success:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            return AcceptanceReceipt.from_payload(payload if isinstance(payload, dict) else {})

        message = error_message(response)

        if response.status_code in (401, 403):
            logger.info(f"{operation}: caller is no longer signed in")
            raise SessionExpiredError()

        if response.status_code == 409 or (
            response.is_client_error and message and _ALREADY_DONE.search(message)
        ):
            logger.info(f"{operation}: invitation already accepted ({response.status_code})")
            raise AlreadyAcceptedError(message)

        invitation_backend_failures_total.labels(
            operation=operation, reason=str(response.status_code)
        ).inc()
        logger.error(f"{operation} returned {response.status_code}")

        if response.is_client_error and message:
            raise AcceptFailureError(message)
        raise AcceptFailureError()
