"""
ReevaluationEngine: derive the running program from the current fragments.

Every change to the fragment set triggers a full refresh:

    store snapshot ──> clear handlers ──> for each fragment, in order:
                                            extract ```py blocks
                                            run blocks against ExecutionContext
                                            annotate ✅ / ❌, report failures

Incremental patching is not attempted. A fragment may register handlers or
mutate shared state in ways that cannot be undone, so the whole program is
re-derived from the whole fragment set each time anything changes.
"""

from __future__ import annotations

import ast
import asyncio
import inspect
from typing import TYPE_CHECKING, Optional

from ..authorization import AuthorizationFilter
from ..errors import InvariantViolation
from .context import ExecutionContext
from .schema import Fragment, FragmentOutcome, OutcomeStatus, RefreshReport
from .store import FragmentStore

if TYPE_CHECKING:
    from ..reporting import AnnotationService, ErrorReporter


COMPILE_FLAGS = ast.PyCF_ALLOW_TOP_LEVEL_AWAIT


def compile_block(source: str, fragment_id: str, index: int):
    """Compile one fenced block; top-level `await` is allowed."""
    return compile(source, f"<fragment {fragment_id} block {index}>", "exec", flags=COMPILE_FLAGS)


class ReevaluationEngine:
    """
    Owns the ExecutionContext and rebuilds it from the FragmentStore.

    refresh() is serialized: at most one evaluation loop runs at a time, and
    each refresh reads the store as it is when the refresh gets the lock.

    Example:
        engine = ReevaluationEngine(store, authorization, context, annotations, reporter)
        report = await engine.refresh()
    """

    def __init__(
        self,
        store: FragmentStore,
        authorization: AuthorizationFilter,
        context: ExecutionContext,
        annotations: Optional["AnnotationService"] = None,
        reporter: Optional["ErrorReporter"] = None,
        fragment_timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.authorization = authorization
        self.context = context
        self.annotations = annotations
        self.reporter = reporter
        self.fragment_timeout = fragment_timeout
        self._lock = asyncio.Lock()
        self._cycle = 0
        self.last_report: Optional[RefreshReport] = None

    @property
    def cycle(self) -> int:
        return self._cycle

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def refresh(self) -> RefreshReport:
        async with self._lock:
            self._cycle += 1
            fragments = self.store.snapshot()

            self.context.clear_handlers()

            report = RefreshReport(cycle=self._cycle)
            for fragment in fragments:
                self._check_trusted(fragment)
                report.outcomes.append(await self._evaluate(fragment))

            report.handler_count = len(self.context.handlers)
            self.last_report = report
            return report

    def _check_trusted(self, fragment: Fragment) -> None:
        if not self.authorization.is_trusted(fragment.author_id):
            raise InvariantViolation(
                f"Fragment {fragment.id} from untrusted author {fragment.author_id} reached evaluation"
            )

    async def _evaluate(self, fragment: Fragment) -> FragmentOutcome:
        blocks = fragment.code_blocks
        if not blocks:
            return FragmentOutcome(fragment_id=fragment.id, status=OutcomeStatus.SKIPPED)

        namespace = self.context.fragment_globals(fragment)
        blocks_run = 0
        try:
            for index, source in enumerate(blocks):
                await self._run_block(source, fragment.id, index, namespace)
                blocks_run += 1
        except Exception as exc:
            self._on_failure(fragment, exc)
            return FragmentOutcome(
                fragment_id=fragment.id,
                status=OutcomeStatus.FAILED,
                blocks_run=blocks_run,
                error=f"{type(exc).__name__}: {exc}",
            )

        if self.annotations:
            self.annotations.mark_success(fragment)
        return FragmentOutcome(
            fragment_id=fragment.id, status=OutcomeStatus.OK, blocks_run=blocks_run
        )

    async def _run_block(self, source: str, fragment_id: str, index: int, namespace: dict) -> None:
        code = compile_block(source, fragment_id, index)
        result = eval(code, namespace)
        if inspect.iscoroutine(result):
            if self.fragment_timeout is None:
                await result
            else:
                await asyncio.wait_for(result, timeout=self.fragment_timeout)

    def _on_failure(self, fragment: Fragment, exc: Exception) -> None:
        if self.annotations:
            self.annotations.mark_failure(fragment)
        if self.reporter:
            self.reporter.schedule(f"Error evaluating code in message {fragment.id}", exc)
