from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional, Tuple


HandlerFn = Callable[[Any], Any]


@dataclass(frozen=True)
class HandlerRecord:
    handler: HandlerFn
    # Id of the fragment whose evaluation registered the handler.
    fragment_id: Optional[str] = None

    @property
    def name(self) -> str:
        return getattr(self.handler, "__qualname__", repr(self.handler))


class HandlerRegistry:
    """Ordered handlers for non-fragment events, rebuilt on every refresh."""

    def __init__(self) -> None:
        self._records: List[HandlerRecord] = []

    def register(self, handler: HandlerFn, fragment_id: Optional[str] = None) -> HandlerFn:
        if not callable(handler):
            raise TypeError(f"Handler must be callable, got {type(handler).__name__}")
        self._records.append(HandlerRecord(handler=handler, fragment_id=fragment_id))
        return handler

    def clear(self) -> None:
        # Rebinding leaves snapshots held by in-flight dispatches untouched.
        self._records = []

    def snapshot(self) -> Tuple[HandlerRecord, ...]:
        return tuple(self._records)

    def handlers(self) -> List[HandlerFn]:
        return [record.handler for record in self._records]

    def __iter__(self) -> Iterator[HandlerRecord]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        return len(self._records)
