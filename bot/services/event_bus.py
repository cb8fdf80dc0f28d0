"""Publish/subscribe for pacte events."""

import logging
from typing import Awaitable, Callable

from models import PacteEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[PacteEvent], Awaitable[None]]


class EventBus:
    """Delivers engine events to the presentation layer.

    Handlers run in subscription order. A failing handler is logged and
    never reaches the engine or the other handlers.
    """

    def __init__(self):
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def emit(self, event: PacteEvent) -> None:
        logger.debug(f"Emitting {type(event).__name__} for pacte #{event.pacte_id}")
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception:
                logger.exception(f"Event handler failed for {type(event).__name__} on pacte #{event.pacte_id}")
