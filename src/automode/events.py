from __future__ import annotations

from collections.abc import Callable
from typing import Any

from loguru import logger

AUTO_MODE_CHANNEL = "auto-mode:event"

EventListener = Callable[[str, dict[str, Any]], None]


class EventBus:
    """Fire-and-forget fan-out of progress events to UI listeners.

    Delivery is synchronous and unacknowledged. A listener that raises is
    logged and skipped so the emitting feature run is never affected.
    """

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, channel: str, payload: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(channel, payload)
            except Exception:
                logger.exception("Event listener failed for {} ({})", channel, payload.get("type"))

    def emit_auto_mode(self, event_type: str, **payload: Any) -> None:
        self.emit(AUTO_MODE_CHANNEL, {"type": event_type, **payload})
