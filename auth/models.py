"""
auth/models.py -- Domain dataclasses for session and verification state.

Pattern: Data class (pure data container, zero logic). Wire shapes live in
api/models.py; stores and flows do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

# ---------------------------------------------------------------------------
# Route constants
# ---------------------------------------------------------------------------

HOME_PATH = "/"
LOGIN_PATH = "/login"
REGISTER_PATH = "/register"
VERIFY_OTP_PATH = "/verify-otp"
DEFAULT_DASHBOARD_PATH = "/dashboard"


class Role(str, Enum):
    job_seeker = "job_seeker"
    employer = "employer"
    admin = "admin"


@dataclass(frozen=True)
class Session:
    """An authenticated session.

    Exists only while the credential store holds a non-empty credential. role
    stays a plain string so an unknown role from the backend is carried through
    rather than rejected; Role members compare equal to their values.
    """

    credential: str
    user_id: str
    role: Optional[str] = None
    email: Optional[str] = None


@dataclass
class PendingVerification:
    """The one email address currently waiting for an OTP.

    resend_cooldown_deadline is a UNIX timestamp (seconds). Resend stays
    disabled until the clock reaches it.
    """

    email: str
    resend_cooldown_deadline: float
    code_length: int = 6


# ---------------------------------------------------------------------------
# Route guard decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Render:
    pass


@dataclass(frozen=True)
class RedirectTo:
    path: str


@dataclass(frozen=True)
class Pending:
    """Session resolution still in flight -- show a neutral loading state."""


RouteDecision = Union[Render, RedirectTo, Pending]
