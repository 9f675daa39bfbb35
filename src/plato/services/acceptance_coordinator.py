# src/plato/services/acceptance_coordinator.py

"""
Acceptance coordinator - drives one invitation from link to membership.

States:
    INIT -> RESOLVING_TOKEN -> TOKEN_INVALID
                            -> CHECKING_SESSION -> UNAUTHENTICATED
                                                -> RESOLVING_ACCEPT -> ACCEPT_SUCCESS
                                                                    -> ACCEPT_FAILURE

Rules:
- The token comes from the request, or from the pending-invitation store when
  the request carries none (the user is back from the login page).
- The session is only probed after the token resolved.
- Signed-out callers get their invitation stashed and are sent to login with a
  return path that re-enters this flow.
- Signed-in callers are accepted without a confirmation step. If the accept
  call finds the session gone, the caller is sent to login as above.
- "Already accepted" counts as success. Other accept failures are never
  retried automatically.
- Errors never escape `run()`; every outcome carries a message and at least
  one recovery action.
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple
from urllib.parse import quote, urlencode

from opentelemetry import trace

from plato.metrics import invitation_outcomes_total
from plato.models.invitation import AcceptanceReceipt, Invitation, InvitationStatus
from plato.models.session import AuthSession
from plato.services.exceptions import (
    AcceptFailureError,
    AlreadyAcceptedError,
    MissingTokenError,
    PlatoInvitationError,
    SessionExpiredError,
    SessionProbeTransportError,
)
from plato.services.invitation_acceptor import InvitationAcceptor
from plato.services.invitation_resolver import InvitationResolver
from plato.services.navigation import LoopRedirectScheduler, Navigator, RedirectScheduler
from plato.services.pending_invitation_store import PendingInvitationStore
from plato.services.plato_api import short_token
from plato.services.query_cache import QueryCache
from plato.services.session_probe import CURRENT_USER_KEY, SessionProbe

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Cached reads that go stale once the caller joins an organization
MEMBERSHIP_QUERIES = ("/organizations/current", "/companies/team", CURRENT_USER_KEY)


class AcceptanceState(str, Enum):
    INIT = "init"
    RESOLVING_TOKEN = "resolving_token"
    TOKEN_INVALID = "token_invalid"
    CHECKING_SESSION = "checking_session"
    UNAUTHENTICATED = "unauthenticated"
    RESOLVING_ACCEPT = "resolving_accept"
    ACCEPT_SUCCESS = "accept_success"
    ACCEPT_FAILURE = "accept_failure"


TERMINAL_STATES = {
    AcceptanceState.TOKEN_INVALID,
    AcceptanceState.UNAUTHENTICATED,
    AcceptanceState.ACCEPT_SUCCESS,
    AcceptanceState.ACCEPT_FAILURE,
}


class RecoveryAction(str, Enum):
    RETRY_ACCEPT = "retry_accept"
    RETRY_SESSION = "retry_session"
    SIGN_IN = "sign_in"
    GO_HOME = "go_home"


@dataclass(frozen=True)
class InvitationRequest:
    """
    What the caller arrived with.

    `organization_id` and `role` are display hints; without a token they
    never trigger acceptance.
    """
    token: Optional[str] = None
    organization_id: Optional[str] = None
    role: Optional[str] = None


@dataclass(frozen=True)
class AcceptanceOutcome:
    """Result of a coordinator run, discriminated by `state`."""
    state: AcceptanceState
    message: str
    actions: Tuple[RecoveryAction, ...] = ()
    invitation: Optional[Invitation] = None
    receipt: Optional[AcceptanceReceipt] = None
    error: Optional[PlatoInvitationError] = None
    redirect_to: Optional[str] = None
    redirect_after: Optional[float] = None
    session_unavailable: bool = False
    stale: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state == AcceptanceState.ACCEPT_SUCCESS

    @property
    def already_member(self) -> bool:
        return bool(self.receipt and self.receipt.already_member)


class AcceptanceCoordinator:
    """State machine tying token resolution, auth gating and acceptance together."""

    def __init__(
        self,
        resolver: InvitationResolver,
        probe: SessionProbe,
        acceptor: InvitationAcceptor,
        store: PendingInvitationStore,
        navigator: Navigator,
        scheduler: Optional[RedirectScheduler] = None,
        cache: Optional[QueryCache] = None,
        login_url: Optional[str] = None,
        home_url: Optional[str] = None,
        accept_path: Optional[str] = None,
        redirect_delay: Optional[float] = None,
    ):
        self.resolver = resolver
        self.probe = probe
        self.acceptor = acceptor
        self.store = store
        self.navigator = navigator
        self.scheduler = scheduler or LoopRedirectScheduler(navigator)
        self.cache = cache

        self.login_url = login_url or os.getenv("PLATO_LOGIN_URL", "/api/login")
        self.home_url = home_url or os.getenv("PLATO_HOME_URL", "/")
        self.accept_path = accept_path or os.getenv("PLATO_ACCEPT_PATH", "/invite/accept")
        if redirect_delay is None:
            redirect_delay = float(os.getenv("INVITATION_REDIRECT_DELAY_SECONDS", "2.5"))
        if not 0 <= redirect_delay <= 10:
            raise ValueError("redirect_delay must be between 0 and 10 seconds")
        self.redirect_delay = redirect_delay

        self.state = AcceptanceState.INIT
        self.transitions: List[AcceptanceState] = [AcceptanceState.INIT]
        self.token: Optional[str] = None
        self.invitation: Optional[Invitation] = None
        self.request = InvitationRequest()
        self.last_outcome: Optional[AcceptanceOutcome] = None

        self._generation = 0
        self._inflight: Optional[Tuple[str, asyncio.Future]] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, request: InvitationRequest) -> AcceptanceOutcome:
        """
        Run the flow for an incoming request.

        A second call for the token already in flight joins that run instead
        of starting another. A call for a different token supersedes it; the
        older run's results are discarded.
        """
        self._ensure_open()

        token = (request.token or "").strip() or None
        from_store = False
        if token is None:
            record = self.store.get()
            if record is not None:
                logger.info(f"Resuming pending invitation {short_token(record.token)}")
                token = record.token
                from_store = True
                request = InvitationRequest(
                    token=record.token,
                    organization_id=request.organization_id or record.organization_id,
                    role=request.role or record.role,
                )

        if self._inflight is not None:
            inflight_token, inflight = self._inflight
            if token is not None and inflight_token == token and not inflight.done():
                logger.debug(f"Joining in-flight run for {short_token(token)}")
                return await asyncio.shield(inflight)

        generation = self._begin(request)

        if token is None:
            self._inflight = None
            return self._finish(
                generation,
                AcceptanceState.TOKEN_INVALID,
                error=MissingTokenError(),
                actions=(RecoveryAction.GO_HOME,),
            )

        task = asyncio.ensure_future(self._run(generation, token, from_store))
        self._inflight = (token, task)
        return await task

    async def retry_accept(self) -> AcceptanceOutcome:
        """
        Re-enter RESOLVING_ACCEPT after a failed acceptance.

        Raises:
            ValueError: If the last run did not end in ACCEPT_FAILURE
        """
        self._ensure_open()
        if self.state != AcceptanceState.ACCEPT_FAILURE or self.invitation is None:
            raise ValueError(f"Nothing to retry from state {self.state.value}")

        generation = self._begin(self.request, reset=False)
        return await self._accept(generation)

    async def retry_session(self) -> AcceptanceOutcome:
        """
        Probe the session again after the auth backend was unreachable.

        Raises:
            ValueError: If the last run did not end on an unavailable session
        """
        self._ensure_open()
        if not (self.last_outcome and self.last_outcome.session_unavailable):
            raise ValueError(f"No session check to retry from state {self.state.value}")

        generation = self._begin(self.request, reset=False)
        return await self._check_session(generation)

    def close(self) -> None:
        """
        Tear down: cancel the pending redirect and drop any in-flight run.
        """
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        self.scheduler.cancel()
        if self._inflight is not None and not self._inflight[1].done():
            self._inflight[1].cancel()
        self._inflight = None
        logger.debug("Acceptance coordinator closed")

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------

    async def _run(self, generation: int, token: str, from_store: bool) -> AcceptanceOutcome:
        # A newer run may have started before this task got scheduled
        if self._is_stale(generation):
            return self._stale()

        with tracer.start_as_current_span("invitation.acceptance") as span:
            span.set_attribute("token.prefix", short_token(token))
            span.set_attribute("token.from_store", from_store)

            self.token = token
            self._enter(AcceptanceState.RESOLVING_TOKEN)

            try:
                invitation = await self.resolver.resolve(token)
            except PlatoInvitationError as e:
                if self._is_stale(generation):
                    return self._stale()
                if from_store:
                    self.store.clear()
                return self._finish(
                    generation,
                    AcceptanceState.TOKEN_INVALID,
                    error=e,
                    actions=(RecoveryAction.GO_HOME,),
                )

            if self._is_stale(generation):
                return self._stale()

            self.invitation = invitation
            return await self._check_session(generation)

    async def _check_session(self, generation: int) -> AcceptanceOutcome:
        self._enter(AcceptanceState.CHECKING_SESSION)

        error: Optional[PlatoInvitationError] = None
        try:
            session = await self.probe.probe()
        except SessionProbeTransportError as e:
            session = AuthSession.unavailable()
            error = e

        if self._is_stale(generation):
            return self._stale()

        if session.transport_failed:
            logger.warning("Session could not be checked; offering retry instead of login")
            return self._finish(
                generation,
                AcceptanceState.UNAUTHENTICATED,
                error=error,
                actions=(RecoveryAction.RETRY_SESSION, RecoveryAction.GO_HOME),
                session_unavailable=True,
            )

        if not session.is_authenticated:
            return self._send_to_login(generation)

        return await self._accept(generation)

    def _send_to_login(self, generation: int) -> AcceptanceOutcome:
        invitation = self.invitation
        organization_id = invitation.organization_id or self.request.organization_id
        role = invitation.role or self.request.role

        self.store.stash(self.token, organization_id, role)
        login_url = self.login_redirect_url(self.token, organization_id, role)

        outcome = self._finish(
            generation,
            AcceptanceState.UNAUTHENTICATED,
            message=(
                f"Sign in to accept this invitation to join "
                f"{invitation.organization_name} as a {role}."
            ),
            actions=(RecoveryAction.SIGN_IN,),
            redirect_to=login_url,
        )
        self.navigator.redirect(login_url)
        return outcome

    async def _accept(self, generation: int) -> AcceptanceOutcome:
        self._enter(AcceptanceState.RESOLVING_ACCEPT)
        invitation = self.invitation

        try:
            receipt = await self.acceptor.accept(self.token)
        except AlreadyAcceptedError:
            logger.info(f"Invitation {short_token(self.token)} was already accepted")
            receipt = AcceptanceReceipt(
                message=f"You're already a member of {invitation.organization_name}.",
                organization_id=invitation.organization_id,
                organization_name=invitation.organization_name,
                role=invitation.role,
                new_member=False,
                already_member=True,
            )
        except SessionExpiredError:
            if self._is_stale(generation):
                return self._stale()
            logger.info("Session ended before acceptance; sending caller to login")
            if self.cache is not None:
                self.cache.invalidate(CURRENT_USER_KEY)
            return self._send_to_login(generation)
        except PlatoInvitationError as e:
            if self._is_stale(generation):
                return self._stale()
            self.store.clear()
            failure = e if isinstance(e, AcceptFailureError) else AcceptFailureError(e.user_message)
            return self._finish(
                generation,
                AcceptanceState.ACCEPT_FAILURE,
                error=failure,
                actions=(RecoveryAction.RETRY_ACCEPT, RecoveryAction.GO_HOME),
            )

        if self._is_stale(generation):
            return self._stale()

        self.store.clear()
        self.invitation = invitation.with_status(InvitationStatus.ACCEPTED)
        if self.cache is not None:
            self.cache.invalidate(*MEMBERSHIP_QUERIES)

        self.scheduler.schedule(self.home_url, self.redirect_delay)

        return self._finish(
            generation,
            AcceptanceState.ACCEPT_SUCCESS,
            message=receipt.message,
            receipt=receipt,
            actions=(RecoveryAction.GO_HOME,),
            redirect_to=self.home_url,
            redirect_after=self.redirect_delay,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def login_redirect_url(self, token: str, organization_id: Optional[str], role: Optional[str]) -> str:
        """Login URL whose return path re-enters this flow with the same token."""
        params = {"token": token}
        if organization_id:
            params["org"] = organization_id
        if role:
            params["role"] = role
        return_path = f"{self.accept_path}?{urlencode(params)}"
        separator = "&" if "?" in self.login_url else "?"
        return f"{self.login_url}{separator}next={quote(return_path, safe='')}"

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Acceptance coordinator is closed")

    def _begin(self, request: InvitationRequest, reset: bool = True) -> int:
        self._generation += 1
        self.scheduler.cancel()
        self.request = request
        if reset:
            self.token = None
            self.invitation = None
            self.state = AcceptanceState.INIT
            self.transitions = [AcceptanceState.INIT]
        return self._generation

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    def _stale(self) -> AcceptanceOutcome:
        logger.debug("Discarding result of a superseded run")
        return AcceptanceOutcome(
            state=self.state,
            message="Superseded by a newer invitation request.",
            stale=True,
        )

    def _enter(self, state: AcceptanceState) -> None:
        logger.debug(f"Acceptance state {self.state.value} -> {state.value}")
        self.state = state
        self.transitions.append(state)

    def _finish(
        self,
        generation: int,
        state: AcceptanceState,
        message: Optional[str] = None,
        error: Optional[PlatoInvitationError] = None,
        **fields,
    ) -> AcceptanceOutcome:
        self._enter(state)
        outcome = AcceptanceOutcome(
            state=state,
            message=message or (error.user_message if error else ""),
            error=error,
            invitation=self.invitation,
            **fields,
        )
        self.last_outcome = outcome
        if self._inflight is not None and generation == self._generation:
            self._inflight = None

        invitation_outcomes_total.labels(state=state.value).inc()
        if error is not None:
            logger.info(f"Invitation flow ended in {state.value}: {type(error).__name__}")
        else:
            logger.info(f"Invitation flow ended in {state.value}")
        return outcome
