"""Change notification for committed state mutations."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

EventType = Literal[
    "selection_changed",
    "config_changed",
    "guidance_changed",
    "stage_status_changed",
    "stage_completed",
    "session_saved",
    "session_deleted",
    "session_loaded",
]


class ChangeEvent(BaseModel):
    """Describes a mutation that has already been committed."""

    type: EventType
    session_id: Optional[str] = None
    stage: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


Listener = Callable[[ChangeEvent], None]


class ChangeNotifier:
    """Fan out change events to subscribed listeners.

    Listeners run synchronously after the mutation is committed. A failing
    listener is logged and does not affect the others or the caller.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` and return a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event_type: EventType, **kwargs: Any) -> ChangeEvent:
        event = ChangeEvent(type=event_type, **kwargs)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Change listener failed for {event_type}")
        return event
