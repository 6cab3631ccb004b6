"""
Gateway: the messaging transport boundary.

The engine only needs ordered create/update/delete notifications, history for
backfill, reactions and a way to post error reports. `Gateway` names that
surface; `DiscordGateway` implements it over the Discord v10 REST API and
websocket gateway using aiohttp.

Architecture:
    Discord ──ws──> DiscordGateway.run() ──GatewayEvent──> LiveSession.handle()
    Discord <─REST─ fetch_messages / add_reaction / remove_reaction / send_message
"""
from __future__ import annotations

import asyncio
import json
import random
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol
from urllib.parse import quote

import aiohttp

from .errors import ChannelUnavailableError, GatewayError
from .kernel.schema import GatewayEvent, GatewayEventKind, MessageEvent


EventHandler = Callable[[GatewayEvent], Awaitable[None]]

API_BASE = "https://discord.com/api/v10"
GATEWAY_QUERY = "?v=10&encoding=json"

# Discord returns at most this many messages per history request.
HISTORY_PAGE_SIZE = 100

INTENT_GUILDS = 1 << 0
INTENT_GUILD_MESSAGES = 1 << 9
INTENT_DIRECT_MESSAGES = 1 << 12
INTENT_MESSAGE_CONTENT = 1 << 15
DEFAULT_INTENTS = (
    INTENT_GUILDS | INTENT_GUILD_MESSAGES | INTENT_DIRECT_MESSAGES | INTENT_MESSAGE_CONTENT
)

OP_DISPATCH = 0
OP_HEARTBEAT = 1
OP_IDENTIFY = 2
OP_RECONNECT = 7
OP_INVALID_SESSION = 9
OP_HELLO = 10
OP_HEARTBEAT_ACK = 11

# Close codes after which reconnecting cannot help (bad token, bad intents...).
FATAL_CLOSE_CODES = {4004, 4010, 4011, 4012, 4013, 4014}

MAX_RATE_LIMIT_RETRIES = 5
RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 60.0
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=30)


class Gateway(Protocol):
    """What the session needs from a messaging transport."""

    async def run(self, handler: EventHandler) -> None: ...

    async def fetch_messages(self, channel_id: str, limit: int) -> List[MessageEvent]: ...

    async def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None: ...

    async def remove_reaction(self, channel_id: str, message_id: str, emoji: str) -> None: ...

    async def send_message(self, channel_id: str, text: str) -> None: ...

    async def close(self) -> None: ...


def message_from_payload(data: Dict[str, Any], self_id: Optional[str]) -> Optional[MessageEvent]:
    """
    Map a MESSAGE_CREATE / MESSAGE_UPDATE payload to a MessageEvent.

    Returns None for partial updates (embed unfurls and the like) that carry
    no author or no content.
    """
    author = data.get("author")
    if not author or "content" not in data:
        return None
    author_id = str(author["id"])
    return MessageEvent(
        id=str(data["id"]),
        author_id=author_id,
        channel_id=str(data["channel_id"]),
        content=data.get("content") or "",
        is_self=self_id is not None and author_id == self_id,
    )


def event_from_dispatch(
    event_type: Optional[str], data: Dict[str, Any], self_id: Optional[str]
) -> Optional[GatewayEvent]:
    """Translate a gateway dispatch into a GatewayEvent, or None to ignore it."""
    if event_type == "READY":
        return GatewayEvent(kind=GatewayEventKind.READY)

    if event_type in ("MESSAGE_CREATE", "MESSAGE_UPDATE"):
        message = message_from_payload(data, self_id)
        if message is None:
            return None
        kind = (
            GatewayEventKind.MESSAGE_CREATE
            if event_type == "MESSAGE_CREATE"
            else GatewayEventKind.MESSAGE_UPDATE
        )
        return GatewayEvent(kind=kind, message=message)

    if event_type == "MESSAGE_DELETE":
        return GatewayEvent(
            kind=GatewayEventKind.MESSAGE_DELETE,
            message=MessageEvent(
                id=str(data["id"]), author_id="", channel_id=str(data["channel_id"])
            ),
        )

    return None


class DiscordGateway:
    """
    Discord transport over aiohttp.

    Sessions are not resumed: every reconnect identifies afresh and yields a
    new READY, and the session answers READY with a full backfill.

    Example:
        gateway = DiscordGateway(token)
        await gateway.run(session.handle)
    """

    def __init__(
        self,
        token: str,
        intents: int = DEFAULT_INTENTS,
        api_base: str = API_BASE,
        session: Optional[aiohttp.ClientSession] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        reconnect_delay: float = RECONNECT_DELAY,
    ) -> None:
        self._token = token
        self._reconnect_delay = reconnect_delay
        self._intents = intents
        self._api_base = api_base.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._output_sink = output_sink
        self._closing = False
        self._sequence: Optional[int] = None
        self._acked = True
        self._zombied = False
        self.self_id: Optional[str] = None

    def _emit(self, content: str) -> None:
        if self._output_sink:
            self._output_sink(content)
        else:
            print(content, file=sys.stderr)

    # =========================================================================
    # REST
    # =========================================================================

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "Authorization": f"Bot {self._token}",
                    "User-Agent": "DiscordBot (codeloom, 0.1.0)",
                },
            )
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        session = await self._ensure_session()
        url = f"{self._api_base}{path}"

        for _ in range(MAX_RATE_LIMIT_RETRIES):
            async with session.request(
                method, url, params=params, json=payload, timeout=REQUEST_TIMEOUT
            ) as response:
                if response.status == 429:
                    body = await response.json(content_type=None)
                    await asyncio.sleep(float(body.get("retry_after", 1.0)))
                    continue
                response.raise_for_status()
                if response.status == 204:
                    return None
                return await response.json(content_type=None)

        raise GatewayError(f"{method} {path}: still rate limited after {MAX_RATE_LIMIT_RETRIES} attempts")

    async def fetch_messages(self, channel_id: str, limit: int) -> List[MessageEvent]:
        """
        Fetch up to `limit` most recent messages, oldest first.

        Raises:
            ChannelUnavailableError: the channel does not exist or is not readable.
        """
        collected: List[Dict[str, Any]] = []
        before: Optional[str] = None

        while len(collected) < limit:
            page_size = min(HISTORY_PAGE_SIZE, limit - len(collected))
            params: Dict[str, Any] = {"limit": page_size}
            if before:
                params["before"] = before
            try:
                page = await self._request("GET", f"/channels/{channel_id}/messages", params=params)
            except aiohttp.ClientResponseError as exc:
                if exc.status in (403, 404):
                    raise ChannelUnavailableError(
                        f"Cannot read channel {channel_id} (HTTP {exc.status})"
                    ) from exc
                raise
            collected.extend(page)
            if len(page) < page_size:
                break
            before = str(page[-1]["id"])

        messages = [message_from_payload(item, self.self_id) for item in collected]
        # The API pages newest first.
        return [m for m in reversed(messages) if m is not None]

    async def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None:
        await self._request(
            "PUT", f"/channels/{channel_id}/messages/{message_id}/reactions/{quote(emoji)}/@me"
        )

    async def remove_reaction(self, channel_id: str, message_id: str, emoji: str) -> None:
        await self._request(
            "DELETE", f"/channels/{channel_id}/messages/{message_id}/reactions/{quote(emoji)}/@me"
        )

    async def send_message(self, channel_id: str, text: str) -> None:
        await self._request("POST", f"/channels/{channel_id}/messages", payload={"content": text})

    # =========================================================================
    # Websocket
    # =========================================================================

    async def run(self, handler: EventHandler) -> None:
        """
        Connect and deliver events to `handler` until close() is called.

        Events are delivered one at a time: the next frame is not read until
        the handler returns. Exceptions from the handler propagate.
        """
        backoff = self._reconnect_delay
        while not self._closing:
            try:
                data = await self._request("GET", "/gateway/bot")
                url = f"{data['url']}/{GATEWAY_QUERY}"
                await self._run_connection(url, handler)
                backoff = self._reconnect_delay
            except aiohttp.ClientResponseError as exc:
                if exc.status == 401:
                    raise GatewayError("Discord rejected the bot token (HTTP 401)") from exc
                self._emit(f"✗ Gateway connection failed: HTTP {exc.status}")
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                self._emit(f"✗ Gateway connection failed: {type(exc).__name__}: {exc}")
            if self._closing:
                break
            self._emit(f"[*] Reconnecting to gateway in {backoff:g}s")
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, MAX_RECONNECT_DELAY)

    async def _run_connection(self, url: str, handler: EventHandler) -> None:
        session = await self._ensure_session()
        heartbeat: Optional[asyncio.Task] = None
        self._sequence = None
        self._acked = True
        self._zombied = False

        async with session.ws_connect(url, max_msg_size=0) as ws:
            try:
                async for frame in ws:
                    if frame.type != aiohttp.WSMsgType.TEXT:
                        if frame.type == aiohttp.WSMsgType.ERROR:
                            self._emit(f"✗ Gateway error: {ws.exception()}")
                        break

                    packet = json.loads(frame.data)
                    op = packet.get("op")
                    if packet.get("s") is not None:
                        self._sequence = packet["s"]

                    if op == OP_HELLO:
                        interval = packet["d"]["heartbeat_interval"] / 1000.0
                        heartbeat = asyncio.create_task(self._heartbeat(ws, interval))
                        await ws.send_json(self._identify_payload())
                    elif op == OP_HEARTBEAT:
                        await ws.send_json({"op": OP_HEARTBEAT, "d": self._sequence})
                    elif op == OP_HEARTBEAT_ACK:
                        self._acked = True
                    elif op in (OP_RECONNECT, OP_INVALID_SESSION):
                        await ws.close()
                        break
                    elif op == OP_DISPATCH:
                        await self._dispatch(packet, handler)
            finally:
                if heartbeat is not None:
                    if self._zombied:
                        # Let the heartbeat finish sending its 4000 close frame.
                        await heartbeat
                    else:
                        heartbeat.cancel()

        if ws.close_code in FATAL_CLOSE_CODES:
            raise GatewayError(f"Gateway closed the connection with code {ws.close_code}")

    async def _dispatch(self, packet: Dict[str, Any], handler: EventHandler) -> None:
        data = packet.get("d") or {}
        if packet.get("t") == "READY":
            self.self_id = str(data["user"]["id"])
        event = event_from_dispatch(packet.get("t"), data, self.self_id)
        if event is not None:
            await handler(event)

    def _identify_payload(self) -> Dict[str, Any]:
        return {
            "op": OP_IDENTIFY,
            "d": {
                "token": self._token,
                "intents": self._intents,
                "properties": {"os": sys.platform, "browser": "codeloom", "device": "codeloom"},
            },
        }

    async def _heartbeat(self, ws: aiohttp.ClientWebSocketResponse, interval: float) -> None:
        await asyncio.sleep(interval * random.random())
        while not ws.closed:
            if not self._acked:
                # Zombied connection: no ACK since the last beat.
                self._zombied = True
                await ws.close(code=4000)
                return
            self._acked = False
            await ws.send_json({"op": OP_HEARTBEAT, "d": self._sequence})
            await asyncio.sleep(interval)

    async def close(self) -> None:
        self._closing = True
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
