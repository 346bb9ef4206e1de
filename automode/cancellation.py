"""
Cancellation Token - Kooperativer Abbruch eines laufenden Features.

Der Token wird beim Admit erzeugt und durch Driver und Provider gereicht.
cancel() markiert den Token, weckt Wartende und ruft registrierte Callbacks
(z.B. Task.cancel der laufenden asyncio Task) genau einmal auf.
"""

import logging
import threading
from typing import Callable
from uuid import uuid4

from .errors import CancellationError

log = logging.getLogger(__name__)


class CancellationToken:
    """Thread-sicherer Abbruch-Token."""

    def __init__(self):
        self.id = str(uuid4())[:8]
        self._lock = threading.Lock()
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def on_cancel(self, callback: Callable[[str], None]) -> None:
        """Callback registrieren. Ist der Token schon abgebrochen, sofort aufrufen."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
            reason = self._reason or ""
        callback(reason)

    def cancel(self, reason: str = "Operation was aborted") -> bool:
        """
        Token abbrechen.

        Returns:
            True beim ersten Aufruf, False wenn schon abgebrochen
        """
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            self._reason = reason
            callbacks = self._callbacks
            self._callbacks = []

        for callback in callbacks:
            try:
                callback(reason)
            except Exception:
                log.exception("Cancel callback failed for token %s", self.id)
        return True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError(self._reason or "Operation was aborted")

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "active"
        return f"<CancellationToken {self.id} {state}>"
