"""
LiveSession: the one place gateway events enter the engine.

Routing, in order:
  1. Messages from the bot's own identity are dropped.
  2. Trusted posts in a fragment channel, edits of stored fragments and
     deletions of stored fragments mutate the FragmentStore and refresh.
  3. Everything else goes to the EventRouter.

READY (first connect and every reconnect) triggers a full backfill.
"""
from __future__ import annotations

import sys
from typing import Callable, List, Optional

from .authorization import AuthorizationFilter
from .config import Settings
from .errors import BackfillError, StoreCapacityError
from .gateway import Gateway
from .kernel.context import ExecutionContext
from .kernel.engine import ReevaluationEngine
from .kernel.resolver import DependencyResolver
from .kernel.router import EventRouter
from .kernel.schema import Fragment, GatewayEvent, GatewayEventKind, MessageEvent, RefreshReport
from .kernel.store import FragmentStore
from .reporting import AnnotationService, BackgroundTasks, ErrorReporter


class LiveSession:
    def __init__(
        self,
        gateway: Gateway,
        authorization: AuthorizationFilter,
        store: FragmentStore,
        engine: ReevaluationEngine,
        router: EventRouter,
        annotations: AnnotationService,
        reporter: ErrorReporter,
        output_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.gateway = gateway
        self.authorization = authorization
        self.store = store
        self.engine = engine
        self.router = router
        self.annotations = annotations
        self.reporter = reporter
        self._output_sink = output_sink
        self.ready_count = 0

    @classmethod
    def build(
        cls,
        settings: Settings,
        gateway: Gateway,
        output_sink: Optional[Callable[[str], None]] = None,
        resolver: Optional[DependencyResolver] = None,
    ) -> "LiveSession":
        """Wire every component from settings around a gateway."""
        tasks = BackgroundTasks()
        reporter = ErrorReporter(gateway, settings.log_channel_id, output_sink=output_sink, tasks=tasks)
        annotations = AnnotationService(gateway, reporter, tasks=tasks)
        authorization = AuthorizationFilter(settings.programmer_ids, settings.code_channel_ids)
        store = FragmentStore(capacity=settings.max_code_messages)
        context = ExecutionContext(
            resolver=resolver or DependencyResolver(output_sink=output_sink),
            gateway=gateway,
            output_sink=output_sink,
        )
        engine = ReevaluationEngine(
            store,
            authorization,
            context,
            annotations=annotations,
            reporter=reporter,
            fragment_timeout=settings.fragment_timeout,
        )
        router = EventRouter(context.handlers, reporter=reporter)
        return cls(
            gateway, authorization, store, engine, router, annotations, reporter,
            output_sink=output_sink,
        )

    @property
    def context(self) -> ExecutionContext:
        return self.engine.context

    def emit(self, content: str) -> None:
        if self._output_sink:
            self._output_sink(content)
        else:
            print(content, file=sys.stderr)

    async def run(self) -> None:
        await self.gateway.run(self.handle)

    async def handle(self, event: GatewayEvent) -> None:
        if event.kind == GatewayEventKind.READY:
            await self.on_ready()
            return
        message = event.message
        if message is None:
            return
        if event.kind == GatewayEventKind.MESSAGE_CREATE:
            await self.on_message_create(message)
        elif event.kind == GatewayEventKind.MESSAGE_UPDATE:
            await self.on_message_update(message)
        elif event.kind == GatewayEventKind.MESSAGE_DELETE:
            await self.on_message_delete(message)

    async def on_ready(self) -> None:
        report = await self.backfill()
        self.ready_count += 1
        self.emit(
            f"[*] Started successfully: {len(self.store)} fragment(s), "
            f"{report.handler_count} handler(s), {len(report.failed)} failure(s)"
        )

    async def on_message_create(self, message: MessageEvent) -> None:
        if message.is_self:
            return

        if self.authorization.is_fragment(message):
            fragment = Fragment.from_message(message)
            try:
                self.store.upsert(fragment)
            except StoreCapacityError as exc:
                self.annotations.mark_failure(fragment)
                self.reporter.schedule(f"Refusing code message {fragment.id}", exc)
                return
            await self.engine.refresh()
            return

        await self.router.dispatch(message)

    async def on_message_update(self, message: MessageEvent) -> None:
        if message.is_self:
            return

        if self.authorization.is_code_channel(message.channel_id) and message.id in self.store:
            self.store.upsert(Fragment.from_message(message))
            await self.engine.refresh()
            return

        await self.router.dispatch(message)

    async def on_message_delete(self, message: MessageEvent) -> None:
        if self.store.remove(message.id):
            await self.engine.refresh()

    async def backfill(self) -> RefreshReport:
        """
        Re-seed the store from channel history and refresh once.

        Raises:
            BackfillError: a channel holds more messages than the store bound.
            ChannelUnavailableError: a designated channel cannot be read.
        """
        capacity = self.store.capacity
        fragments: List[Fragment] = []

        for channel_id in self.authorization.code_channels:
            messages = await self.gateway.fetch_messages(channel_id, limit=capacity + 1)
            if len(messages) > capacity:
                raise BackfillError(
                    f"There are too many messages in code channel {channel_id} "
                    f"(more than {capacity})"
                )
            fragments.extend(
                Fragment.from_message(m) for m in messages if self.authorization.is_fragment(m)
            )

        try:
            self.store.replace_all(fragments)
        except StoreCapacityError as exc:
            raise BackfillError(str(exc)) from exc

        return await self.engine.refresh()

    async def drain(self) -> None:
        """Wait until every pending annotation and error report has been delivered."""
        await self.reporter.tasks.drain()
