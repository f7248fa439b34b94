"""
auth/store.py -- Durable session storage and the single-writer credential store.

Pattern: Repository (same as the SQLAlchemy Core stores elsewhere in the
stack). SqlSessionStorage is a string key/value table namespaced by a session
scope -- the moral equivalent of a browser's per-tab sessionStorage. Nothing
outside this module issues SQL.

Ownership:
  CredentialStore is the ONLY writer of the credential key. The in-memory copy
  and the durable copy change together through CredentialStore.set(); no other
  component may touch the durable key directly.

  PendingVerificationStore owns the pending-verification keys and is used only
  by the flows that start verification and by the verification machine.

Layer rule: no imports from api/. Imports from core/ are allowed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Optional, Protocol

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from auth.models import PendingVerification
from core.config import get_settings

logger = logging.getLogger("jobportal.auth.store")

CREDENTIAL_KEY = "auth_token"
PENDING_EMAIL_KEY = "pendingVerificationEmail"
PENDING_DEADLINE_KEY = "pendingVerificationResendAt"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_session_storage = Table(
    "session_storage",
    _metadata,
    Column("scope", String(100), primary_key=True),
    Column("key", String(100), primary_key=True),
    Column("value", Text, nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so a reader never blocks on a concurrent write."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Durable storage backends
# ---------------------------------------------------------------------------


class SessionStorage(Protocol):
    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def clear(self) -> None: ...


class SqlSessionStorage:
    """SQLAlchemy-backed session storage, one row per (scope, key).

    Usage:
        storage = SqlSessionStorage(scope="tab-1")
        storage.set_item("auth_token", "eyJ...")
        storage.get_item("auth_token")
        storage.close()

    db_url and scope default to SESSION_DB_URL and SESSION_SCOPE from
    settings. In tests, pass a named shared-memory URI
    (sqlite:///file:name?mode=memory&cache=shared&uri=true) so every pooled
    connection sees the same in-memory database.
    """

    def __init__(self, db_url: Optional[str] = None, scope: Optional[str] = None) -> None:
        if db_url is None or scope is None:
            settings = get_settings()
            db_url = db_url or settings.session_db_url
            scope = scope or settings.session_scope
        self.scope = scope
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def _where(self, key: str):
        return (_session_storage.c.scope == self.scope) & (_session_storage.c.key == key)

    def get_item(self, key: str) -> Optional[str]:
        with self.engine.connect() as conn:
            row = conn.execute(_session_storage.select().where(self._where(key))).fetchone()
        return row.value if row is not None else None

    def set_item(self, key: str, value: str) -> None:
        """Insert or replace the value stored under key for this scope."""
        with self.engine.connect() as conn:
            result = conn.execute(_session_storage.update().where(self._where(key)).values(value=value))
            if result.rowcount == 0:
                conn.execute(_session_storage.insert().values(scope=self.scope, key=key, value=value))
            conn.commit()

    def remove_item(self, key: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_session_storage.delete().where(self._where(key)))
            conn.commit()

    def clear(self) -> None:
        """Drop every key in this scope -- the end of the logical session."""
        with self.engine.connect() as conn:
            conn.execute(_session_storage.delete().where(_session_storage.c.scope == self.scope))
            conn.commit()

    def close(self) -> None:
        self.engine.dispose()


class MemorySessionStorage:
    """Process-local storage. Nothing survives a restart."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()


# ---------------------------------------------------------------------------
# Credential store
# ---------------------------------------------------------------------------


class CredentialStore:
    """Single source of truth for the current bearer credential.

    Write-through: set() updates memory and the durable store together.
    get() hydrates lazily from the durable store so a fresh process started
    inside a live session picks the token back up. The credential is never
    refreshed here -- renewal only comes from a new login or verification.

    Listeners registered with add_listener() are called with the new value
    (None when cleared) after every set(), whoever the caller is. The session
    resolver uses this to drop its cached session the moment a 401 clears the
    credential.
    """

    def __init__(self, storage: SessionStorage) -> None:
        self._storage = storage
        self._token: Optional[str] = None
        self._listeners: list[Callable[[Optional[str]], None]] = []

    def add_listener(self, listener: Callable[[Optional[str]], None]) -> None:
        self._listeners.append(listener)

    def set(self, token: Optional[str]) -> None:
        if token:
            self._token = token
            self._storage.set_item(CREDENTIAL_KEY, token)
            logger.info("Credential installed")
        else:
            self._token = None
            self._storage.remove_item(CREDENTIAL_KEY)
            logger.info("Credential cleared")
        for listener in self._listeners:
            listener(self._token)

    def get(self) -> Optional[str]:
        if not self._token:
            self._token = self._storage.get_item(CREDENTIAL_KEY) or None
        return self._token


# ---------------------------------------------------------------------------
# Pending verification store
# ---------------------------------------------------------------------------


class PendingVerificationStore:
    """Holds at most one PendingVerification. save() overwrites any previous one."""

    def __init__(self, storage: SessionStorage, code_length: int = 6) -> None:
        self._storage = storage
        self._code_length = code_length

    def save(self, pending: PendingVerification) -> None:
        self._storage.set_item(PENDING_EMAIL_KEY, pending.email)
        self._storage.set_item(PENDING_DEADLINE_KEY, repr(float(pending.resend_cooldown_deadline)))

    def load(self) -> Optional[PendingVerification]:
        email = self._storage.get_item(PENDING_EMAIL_KEY)
        if not email:
            return None
        raw_deadline = self._storage.get_item(PENDING_DEADLINE_KEY)
        try:
            deadline = float(raw_deadline) if raw_deadline else 0.0
        except ValueError:
            logger.warning("Discarding unparseable resend deadline %r", raw_deadline)
            deadline = 0.0
        return PendingVerification(email=email, resend_cooldown_deadline=deadline, code_length=self._code_length)

    def update_deadline(self, deadline: float) -> None:
        if self._storage.get_item(PENDING_EMAIL_KEY):
            self._storage.set_item(PENDING_DEADLINE_KEY, repr(float(deadline)))

    def clear(self) -> None:
        self._storage.remove_item(PENDING_EMAIL_KEY)
        self._storage.remove_item(PENDING_DEADLINE_KEY)
