from typing import Any, Callable, Dict, List

import structlog


logger = structlog.get_logger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]


class EventEmitter:
    """Synchronous listener fan-out. A failing listener is logged and skipped."""

    def __init__(self, source: str):
        self._source = source
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener called as listener(event_type, data).

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event_type: str, **data: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(event_type, data)
            except Exception as e:
                logger.warning("event_listener_failed", source=self._source, event=event_type, error=str(e))

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
