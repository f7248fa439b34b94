"""
api/dispatcher.py -- The one way outbound calls reach the backing service.

Every call goes through Dispatcher.dispatch(). It:
  - builds the URL from ordered path segments plus optional query mappings
    (build_target, pure),
  - attaches the bearer credential when one is held,
  - lets the shared requests.Session cookie jar ride along regardless,
  - serializes a body as JSON with a matching Content-Type (no body, no header),
  - turns non-success responses into ApiError subclasses. Nothing is retried.

Two policies govern a 401:
  RETURN_NULL -- resolve with None. Used by "am I logged in" probes.
  THROW       -- raise AuthRequired. When clear_credential_on_unauthorized is
                 set and a credential was attached, the credential store is
                 cleared first so the next navigation sees no session.

requests is blocking; the call runs in a worker thread via asyncio.to_thread
so callers on the event loop are never blocked.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from http import HTTPStatus
from typing import Any, Optional, TypeVar, Union
from urllib.parse import urlencode

import requests
from pydantic import BaseModel, ValidationError

from auth.store import CredentialStore
from core.config import Settings, get_settings
from core.errors import ApiError, AuthRequired, MalformedResponse, RateLimited

logger = logging.getLogger("jobportal.dispatcher")

ModelT = TypeVar("ModelT", bound=BaseModel)

Segment = Union[str, int, Mapping[str, Any]]

# "all" is the multi-choice filter's "nothing selected" value; never forwarded.
_OMITTED_STRINGS = ("", "all")


class UnauthorizedPolicy(str, Enum):
    RETURN_NULL = "return-null"
    THROW = "throw"


@dataclass(frozen=True)
class PreparedCall:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    data: Optional[str] = None


# ---------------------------------------------------------------------------
# Pure request construction
# ---------------------------------------------------------------------------


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_omitted(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value in _OMITTED_STRINGS)


def build_target(segments: Sequence[Segment], params: Optional[Mapping[str, Any]] = None) -> str:
    """Join path segments with "/" and merge every mapping into the query string.

    >>> build_target(["/api/jobs", {"status": "all", "q": "nurse"}, 3])
    '/api/jobs/3?q=nurse'
    """
    path = ""
    query: list[tuple[str, str]] = []
    mappings = [s for s in segments if isinstance(s, Mapping)]
    if params:
        mappings.append(params)

    for segment in segments:
        if isinstance(segment, Mapping):
            continue
        if isinstance(segment, bool) or not isinstance(segment, (str, int)):
            raise TypeError(f"Unsupported path segment: {segment!r}")
        path += ("" if path == "" else "/") + str(segment)

    for mapping in mappings:
        for key, value in mapping.items():
            if _is_omitted(value):
                continue
            query.append((str(key), _query_value(value)))

    return f"{path}?{urlencode(query)}" if query else path


# ---------------------------------------------------------------------------
# Response handling
# ---------------------------------------------------------------------------


def _reason_phrase(resp: requests.Response) -> str:
    try:
        return HTTPStatus(resp.status_code).phrase
    except ValueError:
        return resp.reason or "Unknown Error"


def extract_message(resp: requests.Response) -> str:
    """Best-effort human message from an error response body."""
    text = resp.text or ""
    try:
        payload = resp.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        message = payload.get("message")
        if isinstance(message, str) and message:
            return message
        error = payload.get("error")
        if isinstance(error, str) and error:
            return error
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    if text.strip():
        return text.strip()
    return _reason_phrase(resp)


def _raise_for_status(resp: requests.Response) -> None:
    message = extract_message(resp)
    if resp.status_code == 401:
        raise AuthRequired(401, message)
    if resp.status_code == 429:
        raise RateLimited(429, message)
    raise ApiError(resp.status_code, message)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class Dispatcher:
    """Authenticated request dispatcher.

    Usage:
        dispatcher = Dispatcher(credentials)
        me = await dispatcher.dispatch("GET", ["/api/auth/me"], on_unauthorized=UnauthorizedPolicy.RETURN_NULL)
    """

    def __init__(
        self,
        credentials: CredentialStore,
        settings: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.credentials = credentials
        self.settings = settings or get_settings()
        if session is None:
            session = requests.Session()
            session.max_redirects = self.settings.max_redirects
        self._session = session

    def build_request(
        self,
        method: str,
        segments: Sequence[Segment],
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
    ) -> PreparedCall:
        """Build the URL and headers for a call. Pure apart from the live credential."""
        headers: dict[str, str] = {}
        data: Optional[str] = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(body.to_body() if hasattr(body, "to_body") else body)
        token = self.credentials.get()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        url = self.settings.api_base_url + _absolute(build_target(segments, params))
        return PreparedCall(method=method.upper(), url=url, headers=headers, data=data)

    async def dispatch(
        self,
        method: str,
        segments: Sequence[Segment],
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        on_unauthorized: UnauthorizedPolicy = UnauthorizedPolicy.THROW,
    ) -> Any:
        """Send one call and return the decoded JSON body (None for an empty body)."""
        call = self.build_request(method, segments, params, body)
        try:
            resp = await asyncio.to_thread(
                self._session.request,
                call.method,
                call.url,
                headers=call.headers,
                data=call.data,
                timeout=self.settings.request_timeout,
            )
        except requests.RequestException as e:
            logger.warning("%s %s failed: %s", call.method, call.url, e)
            raise ApiError(0, f"Network error: {e}") from e

        logger.debug("%s %s -> %d", call.method, call.url, resp.status_code)

        if resp.status_code == 401:
            if on_unauthorized == UnauthorizedPolicy.RETURN_NULL:
                return None
            if self.settings.clear_credential_on_unauthorized and "Authorization" in call.headers:
                logger.warning("401 from %s; dropping held credential", call.url)
                self.credentials.set(None)

        if not resp.ok:
            _raise_for_status(resp)

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponse(resp.status_code, "Response body is not valid JSON") from e

    async def request_model(
        self,
        model: type[ModelT],
        method: str,
        segments: Sequence[Segment],
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        on_unauthorized: UnauthorizedPolicy = UnauthorizedPolicy.THROW,
    ) -> Optional[ModelT]:
        """dispatch() and validate the JSON body against model. None passes through."""
        payload = await self.dispatch(method, segments, params, body, on_unauthorized)
        if payload is None and on_unauthorized == UnauthorizedPolicy.RETURN_NULL:
            return None
        try:
            return model.model_validate(payload if payload is not None else {})
        except ValidationError as e:
            logger.warning("Unexpected %s payload from %s: %s", model.__name__, segments, e)
            raise MalformedResponse(200, f"Unexpected response shape for {model.__name__}") from e

    def close(self) -> None:
        self._session.close()


def _absolute(target: str) -> str:
    return target if target.startswith("/") else f"/{target}"
