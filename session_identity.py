"""
Anonymous session identity for AssetLink.

A SessionIdentity wraps one durable client storage (browser cookies in
the web app, a plain dict in worker threads and tests) and is the only
thing that reads or writes the anonymous session id and the active
analysis id. There is no module-level cache: every call goes through
the storage, so the storage stays the single source of truth.

If the storage is unusable (IdentityUnavailable), get_or_create_session_id()
hands out a fresh id on every call instead of failing. Selections written
that way cannot be reconciled later, but the write still succeeds.
"""

import logging
import os
import uuid
from typing import Optional

from flask import has_request_context, request

logger = logging.getLogger(__name__)

SESSION_KEY = "anonymous_session_id"
ANALYSIS_KEY = "currentAnalysisId"

# Cookie names the web app uses for each storage key.
COOKIE_NAMES = {
    SESSION_KEY: "al_sid",
    ANALYSIS_KEY: "al_aid",
}

COOKIE_MAX_AGE = int(os.environ.get("IDENTITY_COOKIE_MAX_AGE", str(365 * 24 * 3600)))


class IdentityUnavailable(Exception):
    """Raised by a storage backend that cannot be read or written."""

    pass


def generate_session_id() -> str:
    return f"session_{uuid.uuid4().hex}"


class MemoryStorage:
    """Dict-backed storage. Used for worker jobs and tests."""

    def __init__(self, initial=None):
        self._data = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> dict:
        return dict(self._data)


class CookieStorage:
    """
    Storage over the current Flask request's cookies.

    Reads see the incoming cookies overlaid with writes made during this
    request. Writes are queued and flushed onto the response by apply().
    Raises IdentityUnavailable outside a request context.
    """

    def __init__(self, max_age: int = COOKIE_MAX_AGE, secure: bool = False):
        self.max_age = max_age
        self.secure = secure
        self._pending = {}

    def _require_request(self):
        if not has_request_context():
            raise IdentityUnavailable("no request context for cookie storage")

    def get(self, key: str) -> Optional[str]:
        self._require_request()
        if key in self._pending:
            return self._pending[key]
        return request.cookies.get(COOKIE_NAMES.get(key, key)) or None

    def set(self, key: str, value: str) -> None:
        self._require_request()
        self._pending[key] = value

    def remove(self, key: str) -> None:
        self._require_request()
        self._pending[key] = None

    def apply(self, response):
        """Write queued changes as Set-Cookie headers on response."""
        for key, value in self._pending.items():
            name = COOKIE_NAMES.get(key, key)
            if value is None:
                response.delete_cookie(name)
            else:
                response.set_cookie(
                    name, value,
                    max_age=self.max_age,
                    httponly=True,
                    samesite="Lax",
                    secure=self.secure,
                )
        self._pending.clear()
        return response


class SessionIdentity:
    """Anonymous session id and active analysis id for one browsing context."""

    def __init__(self, storage):
        self.storage = storage

    def get_or_create_session_id(self) -> str:
        try:
            session_id = self.storage.get(SESSION_KEY)
            if session_id:
                return session_id
            session_id = generate_session_id()
            self.storage.set(SESSION_KEY, session_id)
            return session_id
        except IdentityUnavailable as e:
            logger.warning("Session storage unavailable, using ephemeral session id: %s", e)
            return generate_session_id()

    def peek_session_id(self) -> Optional[str]:
        """The stored session id, without creating one."""
        try:
            return self.storage.get(SESSION_KEY)
        except IdentityUnavailable:
            return None

    def get_active_analysis_id(self) -> Optional[str]:
        try:
            return self.storage.get(ANALYSIS_KEY)
        except IdentityUnavailable:
            return None

    def set_active_analysis_id(self, analysis_id: Optional[str]) -> None:
        try:
            if analysis_id:
                self.storage.set(ANALYSIS_KEY, analysis_id)
            else:
                self.storage.remove(ANALYSIS_KEY)
        except IdentityUnavailable as e:
            logger.warning("Could not store active analysis id: %s", e)

    def snapshot(self) -> "SessionIdentity":
        """A detached copy backed by memory, safe to hand to another thread."""
        return SessionIdentity(MemoryStorage({
            key: value
            for key, value in (
                (SESSION_KEY, self.peek_session_id()),
                (ANALYSIS_KEY, self.get_active_analysis_id()),
            )
            if value
        }))
