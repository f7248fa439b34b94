"""
auth/session.py -- Session resolution and the credential-issuing flows.

SessionResolver answers "who am I" by probing /api/auth/me under the
RETURN_NULL policy and caching the result until invalidate() is called. The
route guard reads its (session, loading) pair.

AuthFlows covers everything around the OTP machine: password login (and the
403 "verify your email" branch that starts verification), registration,
logout, onboarding, email-link verification, forgot-password, and the Google
redirect URL. The Google flow itself is a full-page redirect handled by the
backend.

Invariant kept here: a Session exists only while the credential store holds a
credential. A probe that comes back empty while a credential is held means the
backend no longer honours it, so the credential is dropped. The other direction
is enforced by listening to the credential store: whoever clears the
credential (a 401 under THROW, logout) ends the cached session with it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Collection
from dataclasses import dataclass
from typing import Optional

from api.dispatcher import Dispatcher, UnauthorizedPolicy
from api.models import (
    AuthSuccessResponse,
    EmailRequest,
    LoginRequest,
    MessageResponse,
    OnboardingRequest,
    RegisterRequest,
    RegisterResponse,
    UserPayload,
)
from auth.guard import decide, landing_route
from auth.models import HOME_PATH, LOGIN_PATH, VERIFY_OTP_PATH, PendingVerification, RouteDecision, Session
from auth.store import PendingVerificationStore
from core.errors import ApiError, AuthRequired, VerificationRequired

logger = logging.getLogger("jobportal.auth.session")

ME_ENDPOINT = "/api/auth/me"
LOGIN_ENDPOINT = "/api/auth/login"
REGISTER_ENDPOINT = "/api/auth/register"
LOGOUT_ENDPOINT = "/api/auth/logout"
ONBOARDING_ENDPOINT = "/api/auth/complete-onboarding"
VERIFY_EMAIL_ENDPOINT = "/api/auth/verify-email"
FORGOT_PASSWORD_ENDPOINT = "/api/auth/forgot-password"
RESEND_VERIFICATION_ENDPOINT = "/api/auth/resend-verification"
GOOGLE_LOGIN_ENDPOINT = "/api/auth/google"

# Backend phrase on a 403 from /login for an unverified address.
VERIFY_EMAIL_MARKER = "verify your email"


# ---------------------------------------------------------------------------
# Session resolution
# ---------------------------------------------------------------------------


class SessionResolver:
    """Cached "current user" lookup.

    Concurrent resolve() calls share one probe. invalidate() discards the
    cached session and any probe still in flight; the next resolve() asks the
    backend again.

    The resolver listens to the credential store. Clearing the credential
    (a 401 anywhere, logout) ends the session immediately with no probe;
    installing a different credential invalidates the cache.

    A probe that fails for any reason other than a 401 still completes the
    resolution with no session. The error is kept on last_error and re-raised
    to the callers awaiting it.
    """

    def __init__(self, dispatcher: Dispatcher) -> None:
        self._dispatcher = dispatcher
        self._session: Optional[Session] = None
        self._resolved = False
        self._generation = 0
        self._inflight: Optional[asyncio.Future] = None
        self.last_error: Optional[ApiError] = None
        dispatcher.credentials.add_listener(self._on_credential_change)

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def loading(self) -> bool:
        return not self._resolved

    async def resolve(self) -> Optional[Session]:
        while not self._resolved:
            if self._inflight is None:
                self._inflight = asyncio.ensure_future(self._probe(self._generation))
            inflight = self._inflight
            try:
                await inflight
            finally:
                if self._inflight is inflight:
                    self._inflight = None
        return self._session

    async def _probe(self, generation: int) -> None:
        credentials = self._dispatcher.credentials
        credential = credentials.get()
        user: Optional[UserPayload] = None
        if credential is not None:
            try:
                user = await self._dispatcher.request_model(
                    UserPayload, "GET", [ME_ENDPOINT], on_unauthorized=UnauthorizedPolicy.RETURN_NULL
                )
            except ApiError as e:
                if generation != self._generation:
                    return
                logger.warning("Session probe failed: %s", e)
                self.last_error = e
                self._session = None
                self._resolved = True
                raise
        if generation != self._generation:
            return

        self.last_error = None
        if user is None:
            if credential is not None and credentials.get() == credential:
                logger.info("Held credential rejected by %s; clearing it", ME_ENDPOINT)
                credentials.set(None)
            self._session = None
        else:
            self._session = Session(credential=credential, user_id=user.id, role=user.role, email=user.email)
        self._resolved = True

    def invalidate(self) -> None:
        self._generation += 1
        self._session = None
        self._resolved = False

    def _on_credential_change(self, token: Optional[str]) -> None:
        if token is None:
            # No credential means no session; nothing to ask the backend.
            self._generation += 1
            self._session = None
            self._resolved = True
        elif self._session is None or self._session.credential != token:
            self.invalidate()

    def guard(self, required_roles: Optional[Collection[str]] = None) -> RouteDecision:
        """Route decision for the current resolution state."""
        return decide(self._session, required_roles, loading=self.loading)


# ---------------------------------------------------------------------------
# Flows
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoginResult:
    user: UserPayload
    redirect_to: str


class AuthFlows:
    """Login, registration and the other flows that start or end a session."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        resolver: SessionResolver,
        pending: PendingVerificationStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._dispatcher = dispatcher
        self._resolver = resolver
        self._pending = pending
        self._clock = clock

    @property
    def _cooldown(self) -> int:
        return self._dispatcher.settings.resend_cooldown_seconds

    def begin_verification(self, email: str) -> PendingVerification:
        """Record the address awaiting an OTP, replacing any earlier one."""
        pending = PendingVerification(
            email=email,
            resend_cooldown_deadline=self._clock() + self._cooldown,
            code_length=self._dispatcher.settings.otp_length,
        )
        self._pending.save(pending)
        logger.info("Verification pending for %s", email)
        return pending

    async def login(self, email: str, password: str) -> LoginResult:
        """Password login.

        Raises VerificationRequired (after recording the pending verification)
        when the backend answers 403 with the "verify your email" marker. No
        credential is installed in that case.
        """
        try:
            result = await self._dispatcher.request_model(
                AuthSuccessResponse,
                "POST",
                [LOGIN_ENDPOINT],
                body=LoginRequest(email=email, password=password),
            )
        except ApiError as e:
            if e.status == 403 and VERIFY_EMAIL_MARKER in e.message.lower():
                pending = self.begin_verification(email)
                raise VerificationRequired(pending, VERIFY_OTP_PATH, e.message) from e
            raise

        self._dispatcher.credentials.set(result.token)
        self._resolver.invalidate()
        logger.info("Logged in as user %s (role=%s)", result.user.id, result.user.role)
        return LoginResult(user=result.user, redirect_to=landing_route(result.user.role))

    async def register(
        self,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: str = "job_seeker",
    ) -> str:
        """Create an account. Returns where to navigate next; never installs a credential."""
        body = RegisterRequest(email=email, password=password, first_name=first_name, last_name=last_name, role=role)
        result = await self._dispatcher.request_model(RegisterResponse, "POST", [REGISTER_ENDPOINT], body=body)
        if result.requires_otp and result.email:
            self.begin_verification(result.email)
            return VERIFY_OTP_PATH
        return LOGIN_PATH

    async def logout(self) -> str:
        """End the session server-side and locally. Local state is cleared even if the call fails."""
        try:
            await self._dispatcher.dispatch("POST", [LOGOUT_ENDPOINT])
        except AuthRequired:
            logger.info("Logout: backend session was already gone")
        finally:
            self._dispatcher.credentials.set(None)
            self._pending.clear()
        return HOME_PATH

    async def complete_onboarding(self, role: str) -> str:
        result = await self._dispatcher.request_model(
            MessageResponse, "POST", [ONBOARDING_ENDPOINT], body=OnboardingRequest(role=role)
        )
        self._resolver.invalidate()
        return result.message

    async def verify_email_link(self, token: str) -> str:
        """Confirm an address from the emailed link token. Returns the backend message."""
        if not token:
            raise ApiError(400, "Invalid verification link - no token provided")
        result = await self._dispatcher.request_model(
            MessageResponse, "GET", [VERIFY_EMAIL_ENDPOINT], params={"token": token}
        )
        self._resolver.invalidate()
        return result.message or "Email verified successfully!"

    async def forgot_password(self, email: str) -> str:
        result = await self._dispatcher.request_model(
            MessageResponse, "POST", [FORGOT_PASSWORD_ENDPOINT], body=EmailRequest(email=email)
        )
        return result.message

    async def resend_verification_email(self, email: str) -> str:
        """Ask for a fresh verification link (the login page's fallback to the OTP flow)."""
        result = await self._dispatcher.request_model(
            MessageResponse, "POST", [RESEND_VERIFICATION_ENDPOINT], body=EmailRequest(email=email)
        )
        return result.message

    def google_login_url(self) -> str:
        return self._dispatcher.settings.api_base_url + GOOGLE_LOGIN_ENDPOINT
