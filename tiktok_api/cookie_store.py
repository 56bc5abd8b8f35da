"""Optional browser-session cookie used to upgrade failing media downloads."""

import logging
import os
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class CookieStore:
    """Read-only holder of an opaque cookie string.

    The cookie is loaded once from a local text file (the raw ``Cookie`` header
    value, e.g. exported from a browser). A missing or unreadable file is not an
    error: downloads simply proceed without the credential.

    Example:
        >>> store = CookieStore.initialize("cookies.txt")
        >>> store.has_cookie()
        True
        >>> store.cookie  # "sessionid=...; tt_webid=..."
    """

    _instance: Optional["CookieStore"] = None
    _lock = threading.Lock()

    def __init__(self, cookie_file: Optional[str] = None, cookie: Optional[str] = None):
        """Initialize cookie store.

        Args:
            cookie_file: Path to file containing the cookie string
            cookie: Explicit cookie string, takes precedence over the file
        """
        self._cookie: Optional[str] = cookie.strip() if cookie else None
        if self._cookie is None and cookie_file:
            self._cookie = self._load_cookie(cookie_file)

    def _load_cookie(self, file_path: str) -> Optional[str]:
        if not os.path.isabs(file_path):
            file_path = os.path.abspath(file_path)

        if not os.path.isfile(file_path):
            logger.warning(
                f"{os.path.basename(file_path)} not found, proceeding without cookies"
            )
            return None

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                cookie = f.read().strip()
        except OSError as e:
            logger.error(f"Failed to load cookie file {file_path}: {e}")
            return None

        if not cookie:
            logger.warning(f"Cookie file {file_path} is empty")
            return None

        logger.info(f"Cookies loaded from {os.path.basename(file_path)}")
        logger.debug(f"Cookie preview: {cookie[:20]}...")
        return cookie

    @property
    def cookie(self) -> Optional[str]:
        return self._cookie

    def has_cookie(self) -> bool:
        return bool(self._cookie)

    @classmethod
    def initialize(cls, cookie_file: Optional[str]) -> "CookieStore":
        """Initialize the singleton instance. Call once at application startup."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = cls(cookie_file)
            return cls._instance

    @classmethod
    def get_instance(cls) -> Optional["CookieStore"]:
        """Get the singleton instance, or None if not initialized."""
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton instance (mainly for testing)."""
        with cls._lock:
            cls._instance = None
