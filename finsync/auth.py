"""
Session credentials shared by the REST client and the Supabase adapter.

Token storage lives outside this package; the app hands the token and user
id over after login and gets told (via listeners) when the session dies.
"""

import logging
import threading
from typing import Callable, Optional

log = logging.getLogger("finsync.auth")


class AuthSession:
    """Bearer token + user id for the signed-in user."""

    def __init__(self, token: str = None, user_id: str = None):
        self._token = token or None
        self._user_id = user_id or None
        self._lock = threading.Lock()
        self._listeners: list[Callable[[str], None]] = []

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def is_authenticated(self) -> bool:
        return bool(self._token)

    def login(self, token: str, user_id: str = None):
        with self._lock:
            self._token = token or None
            self._user_id = user_id or None
        log.info("Session started for user %s", user_id or "<unknown>")

    def invalidate(self, reason: str = ""):
        """Drop the credentials and tell listeners a new login is needed."""
        with self._lock:
            had_session = self._token is not None
            self._token = None
            self._user_id = None
            listeners = list(self._listeners)
        if not had_session:
            return
        log.warning("Session invalidated: %s", reason or "no reason given")
        for callback in listeners:
            callback(reason)

    def on_invalidated(self, callback: Callable[[str], None]):
        with self._lock:
            self._listeners.append(callback)
