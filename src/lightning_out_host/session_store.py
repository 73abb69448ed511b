# src/lightning_out_host/session_store.py

import abc
import logging
import secrets
import time
import typing

from fastapi import Request
from itsdangerous import BadSignature, URLSafeTimedSerializer
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from .config import Settings
from .logging_utils import fingerprint
from .session_data import SessionData

logger = logging.getLogger(__name__)


class SessionStore(abc.ABC):
    """
    Server-side session storage keyed by an opaque session ID.
    Implementations must have committed a write by the time `put` returns.
    """

    @abc.abstractmethod
    async def create(self) -> str:
        ...

    @abc.abstractmethod
    async def get(self, session_id: str) -> typing.Optional[SessionData]:
        ...

    @abc.abstractmethod
    async def put(self, session_id: str, data: SessionData) -> None:
        ...

    @abc.abstractmethod
    async def destroy(self, session_id: str) -> None:
        ...

    @abc.abstractmethod
    async def touch(self, session_id: str) -> bool:
        """Extends the expiry of a live session. Returns False if it no longer exists."""
        ...


class InMemorySessionStore(SessionStore):
    """
    Process-local store. Sessions are lost on restart and not shared between instances.
    Expiry is a fixed time-to-live measured from the last activity.
    """

    def __init__(self, ttl_seconds: int, clock: typing.Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._data: typing.Dict[str, SessionData] = {}
        self._last_seen: typing.Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._data)

    def _expired(self, session_id: str) -> bool:
        last_seen = self._last_seen.get(session_id)
        return last_seen is None or self._clock() - last_seen > self.ttl_seconds

    def _drop(self, session_id: str) -> None:
        self._data.pop(session_id, None)
        self._last_seen.pop(session_id, None)

    async def create(self) -> str:
        session_id = secrets.token_urlsafe(32)
        self._data[session_id] = SessionData()
        self._last_seen[session_id] = self._clock()
        return session_id

    async def get(self, session_id: str) -> typing.Optional[SessionData]:
        if session_id not in self._data:
            return None
        if self._expired(session_id):
            logger.debug("Session %s expired", fingerprint(session_id))
            self._drop(session_id)
            return None
        return self._data[session_id].model_copy()

    async def put(self, session_id: str, data: SessionData) -> None:
        self._data[session_id] = data.model_copy()
        self._last_seen[session_id] = self._clock()

    async def destroy(self, session_id: str) -> None:
        self._drop(session_id)

    async def touch(self, session_id: str) -> bool:
        if session_id not in self._data or self._expired(session_id):
            self._drop(session_id)
            return False
        self._last_seen[session_id] = self._clock()
        return True

    def purge_expired(self) -> int:
        expired = [sid for sid in self._data if self._expired(sid)]
        for sid in expired:
            self._drop(sid)
        return len(expired)


class SessionMiddlewareCustom(BaseHTTPMiddleware):
    """
    Attaches `request.state.session` (SessionData) and `request.state.session_id`.
    The cookie carries only the session ID, signed with SESSION_SECRET.
    """

    def __init__(self, app, settings: Settings, store: SessionStore):
        super().__init__(app)
        self.settings = settings
        self.store = store
        self.serializer = URLSafeTimedSerializer(settings.SESSION_SECRET, salt="lightning-out-session")

    def _read_cookie(self, request: Request) -> typing.Optional[str]:
        raw = request.cookies.get(self.settings.SESSION_COOKIE_NAME)
        if not raw:
            return None
        try:
            return self.serializer.loads(raw, max_age=self.settings.SESSION_TTL_SECONDS)
        except BadSignature:
            logger.warning("Rejected session cookie with a bad or expired signature")
            return None

    async def dispatch(self, request, call_next):
        session_id = self._read_cookie(request)
        session = await self.store.get(session_id) if session_id else None
        request.state.session_loaded = session is not None
        if session is None:
            session_id = None
            session = SessionData()
        request.state.session_id = session_id
        request.state.session = session
        request.state.session_destroyed = False

        response: StarletteResponse = await call_next(request)

        if request.state.session_destroyed and request.state.session_id is None:
            response.delete_cookie(
                self.settings.SESSION_COOKIE_NAME,
                path="/",
                secure=self.settings.cookie_secure,
                httponly=True,
                samesite=self.settings.SESSION_COOKIE_SAMESITE,
            )
            return response

        if request.state.session_id is None and request.state.session.is_empty:
            # Nothing worth keeping for an anonymous visitor
            return response

        await save_session(request)
        self._set_cookie(response, request.state.session_id)
        return response

    def _set_cookie(self, response: StarletteResponse, session_id: str) -> None:
        response.set_cookie(
            self.settings.SESSION_COOKIE_NAME,
            self.serializer.dumps(session_id),
            max_age=self.settings.SESSION_TTL_SECONDS,
            path="/",
            httponly=True,
            secure=self.settings.cookie_secure,
            samesite=self.settings.SESSION_COOKIE_SAMESITE,
        )


def _store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_session(request: Request) -> SessionData:
    return request.state.session


async def save_session(request: Request) -> str:
    """Durably writes the current session, allocating an ID if it has none yet."""
    if request.state.session_id is None:
        request.state.session_id = await _store(request).create()
    await _store(request).put(request.state.session_id, request.state.session)
    return request.state.session_id


async def regenerate_session(request: Request) -> SessionData:
    """Invalidates the current session ID and starts an empty session under a fresh one."""
    if request.state.session_id is not None:
        await _store(request).destroy(request.state.session_id)
    request.state.session_id = await _store(request).create()
    request.state.session = SessionData()
    request.state.session_destroyed = False
    return request.state.session


async def destroy_session(request: Request) -> None:
    if request.state.session_id is not None:
        await _store(request).destroy(request.state.session_id)
    request.state.session_id = None
    request.state.session = SessionData()
    request.state.session_destroyed = True
