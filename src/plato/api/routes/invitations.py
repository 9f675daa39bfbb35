"""
API routes for joining an organization.

Endpoints:
- GET /invite/accept - Run the invitation acceptance flow for a magic link
- POST /invite/accept-code - Join with an organization ID and invite code
- GET /organizations/current - The caller's current organization (cached)
- GET /companies/team - Members of the caller's organization (cached)
"""
import logging
from typing import List, Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response
from opentelemetry import trace
from pydantic import BaseModel
from sqlalchemy.orm import Session

from plato.api.dependencies.client import (
    CLIENT_ID_COOKIE,
    ClientContext,
    get_api_client,
    get_client_context,
    get_query_cache,
)
from plato.db.database import get_db
from plato.services.acceptance_coordinator import (
    MEMBERSHIP_QUERIES,
    AcceptanceCoordinator,
    AcceptanceOutcome,
    AcceptanceState,
    InvitationRequest,
    RecoveryAction,
)
from plato.services.exceptions import (
    AcceptFailureError,
    AlreadyAcceptedError,
    SessionExpiredError,
    SessionProbeTransportError,
)
from plato.services.invitation_acceptor import InvitationAcceptor
from plato.services.invitation_resolver import InvitationResolver
from plato.services.navigation import DeferredRedirect, RecordingNavigator
from plato.services.organization_directory import NotSignedInError, OrganizationDirectory
from plato.services.pending_invitation_store import PendingInvitationStore
from plato.services.query_cache import QueryCache
from plato.services.session_probe import SessionProbe

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)
router = APIRouter(tags=["invitations"])


# ==================== Request/Response Models ====================

class AcceptanceOutcomeResponse(BaseModel):
    """Where the invitation flow ended and what the user can do next."""
    state: str
    message: str
    actions: List[str]
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None
    role: Optional[str] = None
    already_member: bool = False
    session_unavailable: bool = False
    redirect_to: Optional[str] = None
    redirect_after_ms: Optional[int] = None
    retry_url: Optional[str] = None


class InviteCodeRequest(BaseModel):
    """Request to join an organization with an invite code."""
    organization_id: str
    invite_code: str

    class Config:
        json_schema_extra = {
            "example": {
                "organization_id": "42",
                "invite_code": "PLATO-7Q2K"
            }
        }


class AcceptanceReceiptResponse(BaseModel):
    message: str
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None
    role: Optional[str] = None
    new_member: bool = True


# ==================== Helpers ====================

def _remember_client(response: Response, client: ClientContext) -> Response:
    if client.is_new:
        response.set_cookie(
            CLIENT_ID_COOKIE,
            client.client_id,
            httponly=True,
            samesite="lax",
            max_age=60 * 60 * 24 * 365,
        )
    return response


def _outcome_response(
    outcome: AcceptanceOutcome,
    coordinator: AcceptanceCoordinator,
    path: str,
) -> AcceptanceOutcomeResponse:
    invitation = outcome.invitation
    receipt = outcome.receipt

    retry_url = None
    retryable = {RecoveryAction.RETRY_ACCEPT, RecoveryAction.RETRY_SESSION}
    if coordinator.token and retryable.intersection(outcome.actions):
        params = {"token": coordinator.token}
        if coordinator.request.organization_id:
            params["org"] = coordinator.request.organization_id
        if coordinator.request.role:
            params["role"] = coordinator.request.role
        retry_url = f"{path}?{urlencode(params)}"

    return AcceptanceOutcomeResponse(
        state=outcome.state.value,
        message=outcome.message,
        actions=[action.value for action in outcome.actions],
        organization_id=invitation.organization_id if invitation else coordinator.request.organization_id,
        organization_name=(receipt.organization_name if receipt and receipt.organization_name
                           else invitation.organization_name if invitation else None),
        role=invitation.role if invitation else coordinator.request.role,
        already_member=outcome.already_member,
        session_unavailable=outcome.session_unavailable,
        redirect_to=outcome.redirect_to,
        redirect_after_ms=int(outcome.redirect_after * 1000) if outcome.redirect_after is not None else None,
        retry_url=retry_url,
    )


# ==================== Endpoints ====================

@router.get("/invite/accept", response_model=AcceptanceOutcomeResponse)
async def accept_invitation(
    request: Request,
    token: Optional[str] = Query(None),
    org: Optional[str] = Query(None),
    role: Optional[str] = Query(None),
    client: ClientContext = Depends(get_client_context),
    api_client: httpx.AsyncClient = Depends(get_api_client),
    cache: QueryCache = Depends(get_query_cache),
    db: Session = Depends(get_db),
):
    """
    Accept an invitation link.

    Signed-out callers are redirected (303) to the login page and come back
    here afterwards; everyone else gets the outcome as JSON.
    """
    with tracer.start_as_current_span("api.accept_invitation"):
        navigator = RecordingNavigator()
        coordinator = AcceptanceCoordinator(
            resolver=InvitationResolver(api_client),
            probe=SessionProbe(api_client, cache),
            acceptor=InvitationAcceptor(api_client),
            store=PendingInvitationStore(db, slot=client.pending_invitation_slot),
            navigator=navigator,
            scheduler=DeferredRedirect(),
            cache=cache,
            accept_path=request.url.path,
        )

        try:
            outcome = await coordinator.run(
                InvitationRequest(token=token, organization_id=org, role=role)
            )
        except Exception:
            logger.exception("Invitation acceptance crashed")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to process invitation"
            )
        finally:
            coordinator.close()

        if outcome.state == AcceptanceState.UNAUTHENTICATED and navigator.location:
            response = RedirectResponse(navigator.location, status_code=status.HTTP_303_SEE_OTHER)
        else:
            body = _outcome_response(outcome, coordinator, request.url.path)
            response = JSONResponse(body.model_dump())

        return _remember_client(response, client)


@router.post("/invite/accept-code", response_model=AcceptanceReceiptResponse)
async def accept_invite_code(
    payload: InviteCodeRequest,
    client: ClientContext = Depends(get_client_context),
    api_client: httpx.AsyncClient = Depends(get_api_client),
    cache: QueryCache = Depends(get_query_cache),
):
    """
    Join an organization with an invite code.

    The caller must already be signed in.
    """
    with tracer.start_as_current_span("api.accept_invite_code"):

        try:
            session = await SessionProbe(api_client, cache).probe()
        except SessionProbeTransportError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.user_message)

        if not session.is_authenticated:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Sign in to join an organization"
            )

        try:
            receipt = await InvitationAcceptor(api_client).accept_invite_code(
                payload.organization_id, payload.invite_code
            )
        except AlreadyAcceptedError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.user_message)
        except SessionExpiredError as e:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.user_message)
        except AcceptFailureError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.user_message)

        cache.invalidate(*MEMBERSHIP_QUERIES)

        body = AcceptanceReceiptResponse(
            message=receipt.message,
            organization_id=receipt.organization_id,
            organization_name=receipt.organization_name,
            role=receipt.role,
            new_member=receipt.new_member,
        )
        return _remember_client(JSONResponse(body.model_dump()), client)


@router.get("/organizations/current")
async def get_current_organization(
    client: ClientContext = Depends(get_client_context),
    api_client: httpx.AsyncClient = Depends(get_api_client),
    cache: QueryCache = Depends(get_query_cache),
):
    """Return the caller's current organization, served from cache when fresh."""
    directory = OrganizationDirectory(api_client, cache)

    try:
        organization = await directory.current_organization()
    except NotSignedInError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not signed in")
    except httpx.HTTPError as e:
        logger.error(f"Failed to load current organization: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to load organization"
        )

    if organization is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No organization")

    return _remember_client(JSONResponse(organization), client)


@router.get("/companies/team")
async def get_team_members(
    client: ClientContext = Depends(get_client_context),
    api_client: httpx.AsyncClient = Depends(get_api_client),
    cache: QueryCache = Depends(get_query_cache),
):
    """Return the members of the caller's organization, served from cache when fresh."""
    directory = OrganizationDirectory(api_client, cache)

    try:
        members = await directory.team_members()
    except NotSignedInError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not signed in")
    except httpx.HTTPError as e:
        logger.error(f"Failed to load team members: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to load team members"
        )

    return _remember_client(JSONResponse(members), client)
