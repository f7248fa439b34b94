"""
auth/verification.py -- One-time-code email verification state machine.

Main states:
    IDLE -> AWAITING_CODE -> VERIFYING -> VERIFIED        (success, terminal)
                               VERIFYING -> AWAITING_CODE (failure, re-enterable)

Resend availability is a separate sub-state driven only by tick():
    cooldown active (seconds_remaining > 0) -> cooldown expired (== 0)

Transitions are triggered by three events, independent of any UI toolkit:
  - set_code(): input changed. Reaching exactly code_length digits
    auto-submits once; the trigger re-arms when the code drops below full
    length again.
  - tick(): one second elapsed.
  - resend(): user asked for a new code.

At most one verification attempt is in flight. A completion event during
VERIFYING is ignored, and a response that arrives after the machine has left
VERIFYING (leave(), or a newer attempt) is discarded rather than applied.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from api.dispatcher import Dispatcher
from api.models import AuthSuccessResponse, EmailRequest, MessageResponse, UserPayload, VerifyOtpRequest
from auth.guard import landing_route
from auth.models import REGISTER_PATH
from auth.session import SessionResolver
from auth.store import PendingVerificationStore
from core.errors import ApiError, InvalidCode, PortalError

logger = logging.getLogger("jobportal.auth.verification")

VERIFY_OTP_ENDPOINT = "/api/auth/verify-otp"
RESEND_OTP_ENDPOINT = "/api/auth/resend-otp"


class VerificationState(str, Enum):
    IDLE = "idle"
    AWAITING_CODE = "awaiting_code"
    VERIFYING = "verifying"
    VERIFIED = "verified"


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    redirect_to: Optional[str] = None
    user: Optional[UserPayload] = None
    error: Optional[str] = None


class VerificationMachine:
    """Drives the OTP surface for the single pending verification.

    Usage:
        machine = VerificationMachine(dispatcher, resolver, pending_store)
        if redirect := machine.enter():
            navigate(redirect)          # nothing pending -> /register
        result = await machine.set_code("123456")   # auto-submits
    """

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
        self.code_length = dispatcher.settings.otp_length
        self.cooldown_seconds = dispatcher.settings.resend_cooldown_seconds

        self.state = VerificationState.IDLE
        self.email: Optional[str] = None
        self.code = ""
        self.seconds_remaining = 0
        self.last_error: Optional[PortalError] = None
        self.redirect_to: Optional[str] = None
        self.user: Optional[UserPayload] = None
        self._armed = True
        self._attempt = 0
        self._resend_in_flight = False
        self._countdown: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Entry / exit
    # ------------------------------------------------------------------

    def enter(self) -> Optional[str]:
        """Open the verification surface.

        Returns REGISTER_PATH when nothing is pending -- the machine never asks
        for an email address itself. Returns None once AWAITING_CODE.
        """
        pending = self._pending.load()
        if pending is None:
            self.state = VerificationState.IDLE
            return REGISTER_PATH

        self.email = pending.email
        self.code = ""
        self.last_error = None
        self.redirect_to = None
        self._armed = True
        remaining = math.ceil(pending.resend_cooldown_deadline - self._clock())
        self.seconds_remaining = min(max(remaining, 0), self.cooldown_seconds)
        self.state = VerificationState.AWAITING_CODE
        return None

    def leave(self) -> None:
        """Navigate away. Any attempt still in flight will be ignored on completion; a running countdown stops."""
        self._attempt += 1
        self._stop_countdown()
        self.state = VerificationState.IDLE

    # ------------------------------------------------------------------
    # Code entry and submission
    # ------------------------------------------------------------------

    async def set_code(self, value: str) -> Optional[VerificationResult]:
        if self.state != VerificationState.AWAITING_CODE:
            return None

        self.code = "".join(ch for ch in value if ch.isdigit())[: self.code_length]
        if len(self.code) < self.code_length:
            self._armed = True
            return None
        if not self._armed:
            return None
        self._armed = False
        return await self.submit()

    async def submit(self) -> Optional[VerificationResult]:
        if self.state != VerificationState.AWAITING_CODE or len(self.code) != self.code_length or not self.email:
            return None

        self.state = VerificationState.VERIFYING
        self.last_error = None
        self._attempt += 1
        attempt = self._attempt
        try:
            result = await self._dispatcher.request_model(
                AuthSuccessResponse,
                "POST",
                [VERIFY_OTP_ENDPOINT],
                body=VerifyOtpRequest(email=self.email, otp=self.code),
            )
        except ApiError as e:
            if not self._is_current(attempt):
                return None
            self.state = VerificationState.AWAITING_CODE
            self.last_error = InvalidCode(e.message, e.status) if 400 <= e.status < 500 else e
            logger.info("Verification failed for %s: %s", self.email, e.message)
            return VerificationResult(verified=False, error=e.message)

        if not self._is_current(attempt):
            return None

        self._pending.clear()
        self._dispatcher.credentials.set(result.token)
        self._resolver.invalidate()
        self.user = result.user
        self.redirect_to = landing_route(result.user.role)
        self.state = VerificationState.VERIFIED
        logger.info("Email verified for %s (role=%s)", self.email, result.user.role)
        return VerificationResult(verified=True, redirect_to=self.redirect_to, user=result.user)

    def _is_current(self, attempt: int) -> bool:
        return attempt == self._attempt and self.state == VerificationState.VERIFYING

    # ------------------------------------------------------------------
    # Resend cooldown
    # ------------------------------------------------------------------

    @property
    def cooldown_active(self) -> bool:
        return self.seconds_remaining > 0

    @property
    def resend_in_flight(self) -> bool:
        return self._resend_in_flight

    @property
    def resend_enabled(self) -> bool:
        return (
            self.state in (VerificationState.AWAITING_CODE, VerificationState.VERIFYING)
            and not self.cooldown_active
            and not self._resend_in_flight
        )

    def tick(self) -> None:
        """One second elapsed. Stops at zero."""
        if self.seconds_remaining > 0:
            self.seconds_remaining -= 1

    async def run_countdown(self) -> None:
        """Tick once per second until the cooldown expires or the surface is left."""
        while self.cooldown_active and self.state in (VerificationState.AWAITING_CODE, VerificationState.VERIFYING):
            await asyncio.sleep(1)
            self.tick()

    @property
    def countdown_task(self) -> Optional[asyncio.Task]:
        return self._countdown

    def start_countdown(self) -> asyncio.Task:
        """Run run_countdown() in the background, replacing a countdown already running.

        Must be called from inside the event loop.
        """
        self._stop_countdown()
        self._countdown = asyncio.ensure_future(self.run_countdown())
        return self._countdown

    def _stop_countdown(self) -> None:
        if self._countdown is not None and not self._countdown.done():
            self._countdown.cancel()
        self._countdown = None

    async def resend(self) -> bool:
        """Request a fresh code. A no-op (no call, cooldown untouched) while disabled.

        On success the cooldown is reset and its countdown restarted in the
        background (see countdown_task), so resend stays disabled until it
        expires again.
        """
        if not self.resend_enabled:
            return False

        self._resend_in_flight = True
        try:
            await self._dispatcher.request_model(
                MessageResponse, "POST", [RESEND_OTP_ENDPOINT], body=EmailRequest(email=self.email)
            )
        except ApiError as e:
            self.last_error = e
            logger.warning("Resend failed for %s: %s", self.email, e.message)
            return False
        finally:
            self._resend_in_flight = False

        self.seconds_remaining = self.cooldown_seconds
        self._pending.update_deadline(self._clock() + self.cooldown_seconds)
        self.start_countdown()
        logger.info("Verification code resent to %s", self.email)
        return True
