"""
tests/conftest.py -- Shared fixtures for the portal auth core tests.

This module provides:
  - FakeHttpSession: a stand-in for requests.Session that records every call
    and answers from per-route queues with real requests.Response objects.
    No network access ever happens.
  - make_response(): builds a requests.Response with a JSON, text or empty body.
  - Clock: a manually advanced time source for cooldown deadlines.
  - Wired fixtures: credentials, dispatcher, resolver, flows, machine -- all
    sharing one in-memory session storage per test.

Design: the dispatcher runs requests in a worker thread (asyncio.to_thread),
so a route may be a callable. Tests use that to hold a call open with a
threading.Event and observe the in-flight state from the event loop.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Optional, Union
from urllib.parse import parse_qs, urlsplit

import pytest
import requests

from api.dispatcher import Dispatcher
from auth.session import AuthFlows, SessionResolver
from auth.store import CredentialStore, MemorySessionStorage, PendingVerificationStore
from auth.verification import VerificationMachine
from core.config import Settings

BASE_URL = "http://portal.test"
START_TIME = 1_700_000_000.0

# ---------------------------------------------------------------------------
# Fake transport
# ---------------------------------------------------------------------------


def make_response(
    status: int = 200,
    payload: Any = None,
    text: Optional[str] = None,
) -> requests.Response:
    """Build a real requests.Response without a network round trip."""
    resp = requests.Response()
    resp.status_code = status
    resp.encoding = "utf-8"
    try:
        resp.reason = HTTPStatus(status).phrase
    except ValueError:
        resp.reason = ""
    if payload is not None:
        resp._content = json.dumps(payload).encode("utf-8")
        resp.headers["Content-Type"] = "application/json"
    elif text is not None:
        resp._content = text.encode("utf-8")
    else:
        resp._content = b""
    return resp


@dataclass
class RecordedCall:
    method: str
    url: str
    headers: dict
    data: Optional[str]
    timeout: Optional[float]

    @property
    def path(self) -> str:
        return urlsplit(self.url).path

    @property
    def query(self) -> dict:
        return parse_qs(urlsplit(self.url).query)

    @property
    def json(self) -> Any:
        return json.loads(self.data) if self.data else None


Route = Union[requests.Response, Exception, Callable[[], requests.Response]]


class FakeHttpSession:
    """Duck-typed requests.Session. The last queued answer for a route repeats."""

    def __init__(self) -> None:
        self.calls: list[RecordedCall] = []
        self.closed = False
        self._routes: dict[tuple[str, str], list[Route]] = {}
        self._lock = threading.Lock()

    def add(self, method: str, path: str, status: int = 200, payload: Any = None, text: Optional[str] = None) -> None:
        self.add_route(method, path, make_response(status, payload, text))

    def add_route(self, method: str, path: str, route: Route) -> None:
        self._routes.setdefault((method.upper(), path), []).append(route)

    def request(self, method, url, headers=None, data=None, timeout=None):
        call = RecordedCall(method=method, url=url, headers=dict(headers or {}), data=data, timeout=timeout)
        with self._lock:
            self.calls.append(call)
            queue = self._routes.get((method.upper(), call.path))
            if not queue:
                raise AssertionError(f"Unexpected request: {method} {url}")
            route = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route()
        return route

    def calls_to(self, path: str) -> list[RecordedCall]:
        return [c for c in self.calls if c.path == path]

    def close(self) -> None:
        self.closed = True


class Clock:
    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def user_payload(role: Optional[str] = "job_seeker", user_id: Any = "u-1", email: str = "jane@example.com") -> dict:
    return {"id": user_id, "email": email, "firstName": "Jane", "lastName": "Doe", "role": role}


def auth_payload(role: Optional[str] = "job_seeker", token: str = "jwt-token-1", **user_kwargs) -> dict:
    return {"message": "ok", "token": token, "user": user_payload(role, **user_kwargs)}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        api_base_url=BASE_URL,
        session_db_url="sqlite://",
        otp_length=6,
        resend_cooldown_seconds=60,
        clear_credential_on_unauthorized=True,
    )


@pytest.fixture
def storage() -> MemorySessionStorage:
    return MemorySessionStorage()


@pytest.fixture
def credentials(storage: MemorySessionStorage) -> CredentialStore:
    return CredentialStore(storage)


@pytest.fixture
def pending_store(storage: MemorySessionStorage) -> PendingVerificationStore:
    return PendingVerificationStore(storage)


@pytest.fixture
def http() -> FakeHttpSession:
    return FakeHttpSession()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def dispatcher(credentials: CredentialStore, settings: Settings, http: FakeHttpSession) -> Dispatcher:
    return Dispatcher(credentials, settings, session=http)


@pytest.fixture
def resolver(dispatcher: Dispatcher) -> SessionResolver:
    return SessionResolver(dispatcher)


@pytest.fixture
def flows(dispatcher, resolver, pending_store, clock) -> AuthFlows:
    return AuthFlows(dispatcher, resolver, pending_store, clock=clock)


@pytest.fixture
def machine(dispatcher, resolver, pending_store, clock) -> VerificationMachine:
    return VerificationMachine(dispatcher, resolver, pending_store, clock=clock)
