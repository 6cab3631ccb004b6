from __future__ import annotations

import inspect
from typing import TYPE_CHECKING, Optional

from .registry import HandlerRegistry
from .schema import MessageEvent

if TYPE_CHECKING:
    from ..reporting import ErrorReporter


class EventRouter:
    """
    Delivers ordinary (non-fragment) messages to the registered handlers.

    The handler list is snapshotted when dispatch starts; a refresh that
    runs while a handler awaits does not change who receives this event.
    """

    def __init__(self, registry: HandlerRegistry, reporter: Optional["ErrorReporter"] = None) -> None:
        self._registry = registry
        self._reporter = reporter

    async def dispatch(self, event: MessageEvent) -> int:
        """Invoke every handler in order. Returns the number that failed."""
        failures = 0
        for record in self._registry.snapshot():
            try:
                result = record.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                failures += 1
                if self._reporter:
                    self._reporter.schedule(f"Error processing message {event.id}", exc)
        return failures
