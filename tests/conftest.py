"""
Pytest configuration and shared fixtures for codeloom tests.

FakeGateway stands in for the chat transport: channel history, reactions and
sent reports live in plain dicts and lists the steps can inspect.
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Dict, List, Set

import pytest
from pytest_bdd import given, parsers, then, when

from codeloom.config import Settings
from codeloom.errors import ChannelUnavailableError
from codeloom.kernel.resolver import DependencyResolver
from codeloom.kernel.schema import Fragment, GatewayEvent, Marker, MessageEvent
from codeloom.session import LiveSession


def fenced(code: str) -> str:
    """Wrap feature-file code (with literal \\n escapes) in a ```py block."""
    source = code.replace("\\n", "\n")
    return f"```py\n{source}\n```"


def message(
    message_id: str,
    author_id: str,
    content: str,
    channel_id: str = "code",
    is_self: bool = False,
) -> MessageEvent:
    return MessageEvent(
        id=message_id,
        author_id=author_id,
        channel_id=channel_id,
        content=content,
        is_self=is_self,
    )


class FakeGateway:
    def __init__(self) -> None:
        self.history: Dict[str, List[MessageEvent]] = defaultdict(list)
        self.reactions: Dict[str, Set[str]] = defaultdict(set)
        self.sent: List[tuple[str, str]] = []
        self.unavailable: Set[str] = set()
        self.fail_reactions = False
        self.fail_send = False
        # emoji -> seconds; the first add of that emoji waits this long.
        self.slow_first_add: Dict[str, float] = {}
        self.script: List[GatewayEvent] = []
        self.closed = False

    async def run(self, handler) -> None:
        for event in self.script:
            await handler(event)

    async def fetch_messages(self, channel_id: str, limit: int) -> List[MessageEvent]:
        if channel_id in self.unavailable:
            raise ChannelUnavailableError(f"Cannot read channel {channel_id} (HTTP 404)")
        return list(self.history[channel_id][-limit:])

    async def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None:
        if self.fail_reactions:
            raise RuntimeError("reaction endpoint unavailable")
        delay = self.slow_first_add.pop(emoji, 0.0)
        if delay:
            await asyncio.sleep(delay)
        self.reactions[message_id].add(emoji)

    async def remove_reaction(self, channel_id: str, message_id: str, emoji: str) -> None:
        if self.fail_reactions:
            raise RuntimeError("reaction endpoint unavailable")
        self.reactions[message_id].discard(emoji)

    async def send_message(self, channel_id: str, text: str) -> None:
        if self.fail_send:
            raise RuntimeError("send endpoint unavailable")
        self.sent.append((channel_id, text))

    async def close(self) -> None:
        self.closed = True

    def reports(self) -> List[str]:
        return [text for _, text in self.sent]


class FakeInstaller:
    """Records pip targets instead of installing them."""

    def __init__(self, fail: bool = False) -> None:
        self.targets: List[str] = []
        self.fail = fail

    def __call__(self, target: str) -> None:
        self.targets.append(target)
        if self.fail:
            raise RuntimeError(f"pip could not install {target}")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        bot_token="test-token",
        code_channel_ids=["code"],
        log_channel_id="log",
        programmer_ids=["alice", "bob"],
        max_code_messages=5,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def installer() -> FakeInstaller:
    return FakeInstaller()


@pytest.fixture
def console_lines() -> List[str]:
    return []


@pytest.fixture
def live_session(settings, gateway, installer, console_lines) -> LiveSession:
    resolver = DependencyResolver(installer=installer, output_sink=console_lines.append)
    return LiveSession.build(settings, gateway, output_sink=console_lines.append, resolver=resolver)


def run_async(session: LiveSession, awaitable: Awaitable[Any]) -> Any:
    """Run one step's coroutine, then deliver its annotations and reports."""

    async def _main() -> Any:
        result = await awaitable
        await session.drain()
        return result

    return asyncio.run(_main())


# =============================================================================
# Shared Steps
# =============================================================================


@given(parsers.parse('a live session with trusted programmers "{first}" and "{second}"'))
def live_session_ready(live_session, first: str, second: str):
    assert live_session.authorization.trusted_authors == frozenset({first, second})


@given(parsers.parse('a fragment "{fragment_id}" by "{author}" with code "{code}"'))
def fragment_with_code(live_session, fragment_id: str, author: str, code: str):
    live_session.store.upsert(
        Fragment(
            id=fragment_id,
            author_id=author,
            channel_id="code",
            content=f"Fragment {fragment_id}\n{fenced(code)}",
        )
    )


@when("the engine refreshes")
def engine_refreshes(live_session):
    run_async(live_session, live_session.engine.refresh())


@then(parsers.parse('the shared value "{name}" is "{expected}"'))
def shared_value_is(live_session, name: str, expected: str):
    assert repr(getattr(live_session.context.shared, name)) == expected


@then(parsers.parse('fragment "{fragment_id}" is marked as succeeded'))
def marked_succeeded(gateway, fragment_id: str):
    assert gateway.reactions[fragment_id] == {Marker.SUCCESS.value}


@then(parsers.parse('fragment "{fragment_id}" is marked as failed'))
def marked_failed(gateway, fragment_id: str):
    assert gateway.reactions[fragment_id] == {Marker.FAILURE.value}


@then(parsers.parse('an error report mentions "{text}"'))
def error_report_mentions(gateway, text: str):
    assert any(text in report for report in gateway.reports())
    assert all(channel == "log" for channel, _ in gateway.sent)
