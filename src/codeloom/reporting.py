"""
Out-of-band feedback: reaction markers for authors, error reports for operators.

Both are diagnostic aids, never control-flow gates. Every delivery failure is
written to the console sink and dropped; nothing here raises into the engine.
"""
from __future__ import annotations

import asyncio
import sys
import traceback
from functools import partial
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional, Set

from .kernel.schema import Fragment, Marker

if TYPE_CHECKING:
    from .gateway import Gateway


# Discord rejects messages longer than this.
MAX_REPORT_LENGTH = 2000


class BackgroundTasks:
    """Keeps fire-and-forget tasks referenced until they finish."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every pending task, including ones spawned while waiting."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)


class ErrorReporter:
    """Forwards failure descriptions to the operator channel."""

    def __init__(
        self,
        gateway: "Gateway",
        channel_id: str,
        output_sink: Optional[Callable[[str], None]] = None,
        tasks: Optional[BackgroundTasks] = None,
    ) -> None:
        self._gateway = gateway
        self._channel_id = channel_id
        self._output_sink = output_sink
        self.tasks = tasks or BackgroundTasks()

    def emit(self, content: str) -> None:
        if self._output_sink:
            self._output_sink(content)
        else:
            print(content, file=sys.stderr)

    @staticmethod
    def format(description: str, error: BaseException) -> str:
        text = f"{description}: {type(error).__name__}: {error}"
        if len(text) > MAX_REPORT_LENGTH:
            text = text[: MAX_REPORT_LENGTH - 1] + "…"
        return text

    async def report(self, description: str, error: BaseException) -> None:
        self.emit(f"✗ {description}")
        self.emit("".join(traceback.format_exception(type(error), error, error.__traceback__)).rstrip())
        try:
            await self._gateway.send_message(self._channel_id, self.format(description, error))
        except Exception as exc:
            self.emit(f"✗ Failed to log error: {type(exc).__name__}: {exc}")

    def schedule(self, description: str, error: BaseException) -> asyncio.Task:
        return self.tasks.spawn(self.report(description, error))


class AnnotationService:
    """Adds and removes reaction markers on fragment messages, best-effort.

    Operations on one message are chained: each waits for the previous one,
    so markers land in the order refreshes issued them.
    """

    def __init__(
        self,
        gateway: "Gateway",
        reporter: ErrorReporter,
        tasks: Optional[BackgroundTasks] = None,
    ) -> None:
        self._gateway = gateway
        self._reporter = reporter
        self.tasks = tasks or reporter.tasks
        self._tails: Dict[str, asyncio.Task] = {}

    async def add(self, fragment: Fragment, marker: Marker) -> None:
        try:
            await self._gateway.add_reaction(fragment.channel_id, fragment.id, marker.value)
        except Exception as exc:
            await self._reporter.report(
                f"Failed to add reaction {marker.value} to {fragment.id}", exc
            )

    async def remove(self, fragment: Fragment, marker: Marker) -> None:
        try:
            await self._gateway.remove_reaction(fragment.channel_id, fragment.id, marker.value)
        except Exception as exc:
            await self._reporter.report(
                f"Failed to remove reaction {marker.value} from {fragment.id}", exc
            )

    def _enqueue(self, fragment_id: str, operation: Callable[[], Awaitable[None]]) -> asyncio.Task:
        """Run `operation` after every earlier marker operation on the same message."""
        previous = self._tails.get(fragment_id)
        task = self.tasks.spawn(self._after(previous, operation))
        self._tails[fragment_id] = task
        task.add_done_callback(partial(self._forget, fragment_id))
        return task

    @staticmethod
    async def _after(previous: Optional[asyncio.Task], operation: Callable[[], Awaitable[None]]) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        await operation()

    def _forget(self, fragment_id: str, task: asyncio.Task) -> None:
        if self._tails.get(fragment_id) is task:
            del self._tails[fragment_id]

    def mark_success(self, fragment: Fragment) -> None:
        self._enqueue(fragment.id, partial(self.add, fragment, Marker.SUCCESS))
        self._enqueue(fragment.id, partial(self.remove, fragment, Marker.FAILURE))

    def mark_failure(self, fragment: Fragment) -> None:
        self._enqueue(fragment.id, partial(self.remove, fragment, Marker.SUCCESS))
        self._enqueue(fragment.id, partial(self.add, fragment, Marker.FAILURE))
