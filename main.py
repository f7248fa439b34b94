#!/usr/bin/env python3
"""
portal-auth -- Command-line driver for the job portal authentication core.

Every command runs against API_BASE_URL and keeps the bearer credential in the
durable session store, so consecutive invocations share one session.

Usage:
  python main.py register jane@example.com --role employer
  python main.py verify 123456
  python main.py resend
  python main.py login jane@example.com
  python main.py whoami
  python main.py guard --roles employer
  python main.py logout

Environment variables:
  API_BASE_URL    Backend origin (default http://localhost:5000).
  SESSION_SCOPE   Durable store namespace; use one per parallel session.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from dataclasses import dataclass
from typing import Optional

from api.dispatcher import Dispatcher
from auth.models import VERIFY_OTP_PATH, Pending, RedirectTo
from auth.session import AuthFlows, SessionResolver
from auth.store import CredentialStore, PendingVerificationStore, SqlSessionStorage
from auth.verification import VerificationMachine
from core.config import Settings, get_settings
from core.errors import PortalError, VerificationRequired

logger = logging.getLogger("jobportal.cli")


@dataclass
class AuthContext:
    """Everything one CLI invocation needs, wired around a single credential store."""

    storage: SqlSessionStorage
    credentials: CredentialStore
    dispatcher: Dispatcher
    resolver: SessionResolver
    flows: AuthFlows
    verification: VerificationMachine

    def close(self) -> None:
        self.dispatcher.close()
        self.storage.close()


def build_context(settings: Optional[Settings] = None) -> AuthContext:
    settings = settings or get_settings()
    storage = SqlSessionStorage(settings.session_db_url, scope=settings.session_scope)
    credentials = CredentialStore(storage)
    pending = PendingVerificationStore(storage, code_length=settings.otp_length)
    dispatcher = Dispatcher(credentials, settings)
    resolver = SessionResolver(dispatcher)
    return AuthContext(
        storage=storage,
        credentials=credentials,
        dispatcher=dispatcher,
        resolver=resolver,
        flows=AuthFlows(dispatcher, resolver, pending),
        verification=VerificationMachine(dispatcher, resolver, pending),
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _login(ctx: AuthContext, args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    try:
        result = await ctx.flows.login(args.email, password)
    except VerificationRequired as e:
        print(f"  [!] {e.message}")
        print(f"  A code is pending for {e.pending.email}. Run: python main.py verify <CODE>")
        return 2
    print(f"  Logged in as {result.user.email or result.user.id} ({result.user.role}).")
    print(f"  Next: {result.redirect_to}")
    return 0


async def _register(ctx: AuthContext, args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Choose a password: ")
    next_path = await ctx.flows.register(
        args.email, password, first_name=args.first_name, last_name=args.last_name, role=args.role
    )
    if next_path == VERIFY_OTP_PATH:
        print(f"  Account created. Check {args.email} for your verification code.")
    else:
        print("  Account created. Please check your email.")
    print(f"  Next: {next_path}")
    return 0


async def _verify(ctx: AuthContext, args: argparse.Namespace) -> int:
    machine = ctx.verification
    if redirect := machine.enter():
        print(f"  [!] No verification pending. Register first (next: {redirect}).")
        return 1
    code = args.code or input(f"  {machine.code_length}-digit code sent to {machine.email}: ")
    result = await machine.set_code(code)
    if result is None:
        print(f"  [!] Expected {machine.code_length} digits.")
        return 1
    if not result.verified:
        print(f"  [!] Verification failed: {result.error}")
        return 1
    print("  Email verified!")
    print(f"  Next: {result.redirect_to}")
    return 0


async def _resend(ctx: AuthContext, args: argparse.Namespace) -> int:
    machine = ctx.verification
    if redirect := machine.enter():
        print(f"  [!] No verification pending. Register first (next: {redirect}).")
        return 1
    if args.wait and machine.cooldown_active:
        print(f"  Waiting {machine.seconds_remaining}s for the resend cooldown...")
        await machine.run_countdown()
    if machine.cooldown_active:
        print(f"  Resend in {machine.seconds_remaining}s.")
        return 1
    if not await machine.resend():
        print(f"  [!] Failed to resend: {machine.last_error}")
        return 1
    print(f"  New code sent to {machine.email}.")
    return 0


async def _whoami(ctx: AuthContext, args: argparse.Namespace) -> int:
    session = await ctx.resolver.resolve()
    if session is None:
        print("  Not logged in.")
        return 1
    print(f"  user_id={session.user_id} email={session.email} role={session.role}")
    return 0


async def _guard(ctx: AuthContext, args: argparse.Namespace) -> int:
    roles = [r.strip() for r in args.roles.split(",") if r.strip()] if args.roles else None
    await ctx.resolver.resolve()
    decision = ctx.resolver.guard(roles)
    if isinstance(decision, RedirectTo):
        print(f"  redirect -> {decision.path}")
        return 1
    if isinstance(decision, Pending):
        print("  loading")
        return 1
    print("  render")
    return 0


async def _logout(ctx: AuthContext, args: argparse.Namespace) -> int:
    next_path = await ctx.flows.logout()
    print(f"  Logged out. Next: {next_path}")
    return 0


async def _google_url(ctx: AuthContext, args: argparse.Namespace) -> int:
    print(ctx.flows.google_login_url())
    return 0


async def _forgot_password(ctx: AuthContext, args: argparse.Namespace) -> int:
    print(f"  {await ctx.flows.forgot_password(args.email)}")
    return 0


async def _verify_link(ctx: AuthContext, args: argparse.Namespace) -> int:
    print(f"  {await ctx.flows.verify_email_link(args.token)}")
    return 0


_COMMANDS = {
    "login": _login,
    "register": _register,
    "verify": _verify,
    "resend": _resend,
    "whoami": _whoami,
    "guard": _guard,
    "logout": _logout,
    "google-url": _google_url,
    "forgot-password": _forgot_password,
    "verify-link": _verify_link,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portal-auth",
        description="Log in, verify email by one-time code, and check role access against the job portal API.",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("login", help="Password login")
    p.add_argument("email")
    p.add_argument("--password", help="Password (prompted when omitted)")

    p = sub.add_parser("register", help="Create an account and start email verification")
    p.add_argument("email")
    p.add_argument("--password", help="Password (prompted when omitted)")
    p.add_argument("--first-name")
    p.add_argument("--last-name")
    p.add_argument("--role", choices=["job_seeker", "employer"], default="job_seeker")

    p = sub.add_parser("verify", help="Submit the emailed one-time code")
    p.add_argument("code", nargs="?", help="The code (prompted when omitted)")

    p = sub.add_parser("resend", help="Request a new one-time code")
    p.add_argument("--wait", action="store_true", help="Wait out the cooldown instead of failing")

    sub.add_parser("whoami", help="Show the current session")

    p = sub.add_parser("guard", help="Decide render/redirect for a surface")
    p.add_argument("--roles", metavar="ROLES", help="Comma-separated allowed roles (omit for any session)")

    sub.add_parser("logout", help="End the session")
    sub.add_parser("google-url", help="Print the Google sign-in redirect URL")

    p = sub.add_parser("forgot-password", help="Request a password reset email")
    p.add_argument("email")

    p = sub.add_parser("verify-link", help="Confirm an email address from a link token")
    p.add_argument("token")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    ctx = build_context(settings)
    try:
        return asyncio.run(_COMMANDS[args.command](ctx, args))
    except PortalError as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"  [!] {e}")
        return 1
    finally:
        ctx.close()


if __name__ == "__main__":
    sys.exit(main())
