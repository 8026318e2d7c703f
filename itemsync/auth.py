"""Process-wide bearer credential."""

import logging
import threading

logger = logging.getLogger(__name__)


class Credentials:
    """Holds the bearer token used for every remote call.

    The token is refreshed by whoever handles login; the sync layer only
    reads it.
    """

    def __init__(self, token: str | None = None):
        self._token = token
        self._lock = threading.Lock()

    @property
    def token(self) -> str | None:
        with self._lock:
            return self._token

    def set_token(self, token: str | None) -> None:
        with self._lock:
            self._token = token
        logger.info("Credential updated" if token else "Credential cleared")

    @property
    def authorization_header(self) -> str:
        """Value for the HTTP Authorization header."""
        return f"Bearer {self.token or ''}"
