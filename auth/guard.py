"""
auth/guard.py -- Role-based route guard.

decide() is a pure, total function of (session, required_roles, loading). It
owns no state and performs no I/O, so identical inputs always produce the
same decision.

  loading                          -> Pending   (no redirect flash)
  no session                       -> RedirectTo("/login")
  required_roles given, role not in -> RedirectTo(canonical_home(role))
  otherwise                        -> Render

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Collection
from typing import Optional

from auth.models import (
    DEFAULT_DASHBOARD_PATH,
    HOME_PATH,
    LOGIN_PATH,
    Pending,
    RedirectTo,
    Render,
    Role,
    RouteDecision,
    Session,
)

_ROLE_HOMES: dict[str, str] = {
    Role.job_seeker.value: "/dashboard",
    Role.employer.value: "/employer/dashboard",
    Role.admin.value: "/admin/dashboard",
}


def _role_value(role: Optional[str]) -> Optional[str]:
    return role.value if isinstance(role, Role) else role


def canonical_home(role: Optional[str]) -> str:
    """Home route for a role. Unknown or missing roles land on "/"."""
    return _ROLE_HOMES.get(_role_value(role) or "", HOME_PATH)


def landing_route(role: Optional[str]) -> str:
    """Where to go right after login or OTP verification.

    Same mapping as canonical_home(), but an unknown role falls back to the
    generic dashboard instead of the landing page.
    """
    return _ROLE_HOMES.get(_role_value(role) or "", DEFAULT_DASHBOARD_PATH)


def decide(
    session: Optional[Session],
    required_roles: Optional[Collection[str]] = None,
    *,
    loading: bool = False,
) -> RouteDecision:
    if loading:
        return Pending()
    if session is None:
        return RedirectTo(LOGIN_PATH)
    if required_roles is not None:
        allowed = {_role_value(r) for r in required_roles}
        if _role_value(session.role) not in allowed:
            return RedirectTo(canonical_home(session.role))
    return Render()
