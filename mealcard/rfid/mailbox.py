"""
Token Mailbox — single-slot handoff between the RFID reader and the UI.
Publishing overwrites any unread token; reading clears the slot.
"""

import logging
import threading
from datetime import datetime, timezone

from mealcard.services.scan_payload import normalize_token

logger = logging.getLogger(__name__)

DEFAULT_FRAME_PREFIX = "UID:"


class TokenMailbox:
    def __init__(self, prefix=DEFAULT_FRAME_PREFIX):
        self.prefix = prefix
        self._lock = threading.Lock()
        self._slot = None
        self._connected = False
        self._last_error = None
        self._last_scan_at = None

    def parse_frame(self, raw):
        """Token carried by a reader line, or None if the line is not a token frame."""
        line = (raw or "").strip()
        if not line.startswith(self.prefix):
            return None
        return normalize_token(line[len(self.prefix):])

    def publish(self, raw):
        token = self.parse_frame(raw)
        if token is None:
            logger.debug("Discarding reader frame %r", raw)
            return False

        with self._lock:
            if self._slot is not None:
                logger.debug("Unread token %s replaced by %s", self._slot, token)
            self._slot = token
            self._last_scan_at = datetime.now(timezone.utc)
        return True

    def take_latest(self):
        with self._lock:
            token, self._slot = self._slot, None
        return token

    def mark_connected(self):
        with self._lock:
            self._connected = True
            self._last_error = None

    def mark_disconnected(self, error=None):
        # The slot is left alone: a token read before the drop is still valid
        with self._lock:
            self._connected = False
            self._last_error = error

    def status(self):
        with self._lock:
            return {
                "connected": self._connected,
                "last_error": self._last_error,
                "last_scan_at": self._last_scan_at.isoformat() if self._last_scan_at else None,
            }
