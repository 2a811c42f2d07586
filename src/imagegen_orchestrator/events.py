from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .models import utcnow

logger = logging.getLogger(__name__)


class GenerationEventType(str, Enum):
    STATUS_CHANGE = "status_change"
    ITERATION_COMPLETE = "iteration_complete"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class GenerationEvent(BaseModel):
    request_id: str
    type: GenerationEventType
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: utcnow().isoformat())


Listener = Callable[[GenerationEvent], None]

_ALL_REQUESTS = "*"


class GenerationEvents:
    """In-process publish/subscribe for request lifecycle events.

    Listeners run synchronously on the publishing thread. A failing listener
    is logged and skipped; it never interrupts the loop that emitted the event.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def subscribe(self, listener: Listener, request_id: str | None = None) -> Callable[[], None]:
        """Register ``listener`` for one request, or for all when ``request_id`` is None.

        Returns a callable that removes the subscription.
        """
        key = request_id if request_id is not None else _ALL_REQUESTS
        with self._lock:
            self._listeners[key].append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners.get(key, []):
                    self._listeners[key].remove(listener)

        return unsubscribe

    def emit(self, request_id: str, event_type: GenerationEventType, **data: Any) -> GenerationEvent:
        event = GenerationEvent(request_id=request_id, type=event_type, data=data)
        with self._lock:
            listeners = [*self._listeners.get(request_id, []), *self._listeners.get(_ALL_REQUESTS, [])]
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001 - logged, not raised.
                logger.exception("event listener failed for %s on request %s", event_type.value, request_id)
        return event
