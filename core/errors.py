"""
core/errors.py -- Failure taxonomy shared by the dispatcher and the auth flows.

Nothing here is fatal to the process. Every failure leaves the calling flow
in a re-enterable state; the caller decides how to present it.

Layer rule: no imports from api/ or auth/ at runtime.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from auth.models import PendingVerification


class PortalError(Exception):
    """Base class for every failure raised by this package."""


class ApiError(PortalError):
    """A non-success response or a transport failure.

    status is 0 when no HTTP response was received at all.
    """

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"{status}: {message}")
        self.status = status
        self.message = message


class AuthRequired(ApiError):
    """401 under the "throw" policy. Resolved by sending the user to /login."""


class RateLimited(ApiError):
    """429 from the backend (too many OTP attempts or resend requests)."""


class MalformedResponse(ApiError):
    """A 2xx body that does not match the expected response model."""


class VerificationRequired(PortalError):
    """Valid credentials but the email address is not verified yet.

    Not a hard failure: the pending verification has already been recorded and
    redirect_to points at the OTP entry surface.
    """

    def __init__(self, pending: PendingVerification, redirect_to: str, message: str = "") -> None:
        super().__init__(message or "Please verify your email before logging in")
        self.pending = pending
        self.redirect_to = redirect_to
        self.message = str(self)


class InvalidCode(PortalError):
    """The backend rejected the submitted one-time code (mismatch, expired, too many attempts)."""

    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
