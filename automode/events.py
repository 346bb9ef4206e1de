"""
Event Bus - Publish/Subscribe Kanal für Lifecycle-Events.

Wird in Orchestrator, Driver und Approval Gate injiziert.
emit() ruft alle Subscriber synchron in Registrierungs-Reihenfolge auf,
damit die Events eines Features bei jedem Subscriber in Emissions-Reihenfolge ankommen.
"""

import logging
import threading
from typing import Any, Callable

from .models import ActivityEvent

log = logging.getLogger(__name__)

Subscriber = Callable[[ActivityEvent], None]


class EventBus:
    """Einfacher synchroner Event Bus."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Subscriber registrieren.

        Returns:
            Funktion zum Abmelden
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def emit(
        self,
        event_type: str,
        feature_id: str | None = None,
        *,
        message: str | None = None,
        phase: str | None = None,
        tool: str | None = None,
        passes: bool | None = None,
        **data: Any,
    ) -> ActivityEvent:
        """Event bauen und an alle Subscriber verteilen."""
        event = ActivityEvent(
            type=event_type,
            feature_id=feature_id,
            message=message,
            phase=phase,
            tool=tool,
            passes=passes,
            data=data,
        )
        self.publish(event)
        return event

    def publish(self, event: ActivityEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                # Ein fehlerhafter Subscriber darf die Engine nicht stoppen
                log.exception("Event subscriber failed for %s", event.type)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
