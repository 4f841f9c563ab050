"""Connection supervisor: keeps one live log subscription to the ledger node.

Opens an aiohttp websocket, issues one ``eth_subscribe("logs", filter)``
per contract, then pumps ``eth_subscription`` notifications into the
``on_log`` callback. Any failure drops back to DISCONNECTED and retries
after a fixed delay, forever, until ``stop()``.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import Any, Callable
from urllib.parse import urlparse

import aiohttp


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"


class SubscriptionError(Exception):
    """The node rejected or never confirmed an eth_subscribe request."""


def validate_ws_url(url: str) -> str:
    parsed = urlparse(url or "")
    if parsed.scheme not in ("ws", "wss") or not parsed.netloc:
        raise ValueError(f"Invalid ledger websocket endpoint: {url!r}")
    return url


class ConnectionSupervisor:
    """Owns the ledger websocket and its reconnect loop."""

    def __init__(
        self,
        ws_url: str,
        filters: list[dict],
        on_log: Callable[[dict], Any],
        logger: logging.Logger | None = None,
        reconnect_delay: float = 2.0,
        session_factory: Callable[[], Any] = aiohttp.ClientSession,
        heartbeat: float = 20.0,
        subscribe_timeout: float = 15.0,
    ) -> None:
        self._ws_url = validate_ws_url(ws_url)
        self._filters = list(filters)
        self._on_log = on_log
        self._logger = logger or logging.getLogger("wave.connection")
        self._reconnect_delay = reconnect_delay
        self._session_factory = session_factory
        self._heartbeat = heartbeat
        self._subscribe_timeout = subscribe_timeout

        self._state = ConnectionState.DISCONNECTED
        self._subscribed = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._stopping = False

        # Metrics counters
        self.reconnects: int = 0
        self.notifications_received: int = 0
        self.callback_failures: int = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run())
        self._logger.info("Connection supervisor started (%s)", self._ws_url)

    async def stop(self) -> None:
        """Cancel the loop, including a pending reconnect sleep."""
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_state(ConnectionState.DISCONNECTED)
        self._logger.info("Connection supervisor stopped")

    async def wait_subscribed(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._subscribed.wait(), timeout)

    # ── Loop ─────────────────────────────────────────────────

    async def _run(self) -> None:
        while not self._stopping:
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self._connect_and_pump()
                self._logger.warning("Ledger websocket closed")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.warning("Ledger connection failed: %s", exc)
            self._set_state(ConnectionState.DISCONNECTED)
            if self._stopping:
                break
            self.reconnects += 1
            self._logger.info("Reconnecting in %.1fs (attempt %d)", self._reconnect_delay, self.reconnects)
            await asyncio.sleep(self._reconnect_delay)

    async def _connect_and_pump(self) -> None:
        async with self._session_factory() as session:
            async with session.ws_connect(self._ws_url, heartbeat=self._heartbeat) as ws:
                for request_id, log_filter in enumerate(self._filters, start=1):
                    await ws.send_json({
                        "jsonrpc": "2.0",
                        "id": request_id,
                        "method": "eth_subscribe",
                        "params": ["logs", log_filter],
                    })
                    subscription = await asyncio.wait_for(
                        self._await_confirmation(ws, request_id), self._subscribe_timeout,
                    )
                    self._logger.debug("Subscribed %s as %s", log_filter.get("address"), subscription)

                self._set_state(ConnectionState.SUBSCRIBED)
                self._logger.info("Subscribed to %d contract log filter(s)", len(self._filters))

                while True:
                    message = await self._receive(ws)
                    if message is None:
                        return
                    await self._dispatch(message)

    async def _await_confirmation(self, ws, request_id: int) -> str:
        """Read until the reply to *request_id*; notifications in between are dispatched."""
        while True:
            message = await self._receive(ws)
            if message is None:
                raise ConnectionError("websocket closed before subscription was confirmed")
            if message.get("id") == request_id:
                if message.get("error"):
                    raise SubscriptionError(str(message["error"]))
                return str(message.get("result"))
            await self._dispatch(message)

    async def _receive(self, ws) -> dict | None:
        """Next JSON object from the socket, or None once it is closed."""
        while True:
            msg = await ws.receive()
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                return None
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            try:
                data = json.loads(msg.data)
            except ValueError:
                self._logger.warning("Ignoring non-JSON frame from ledger node")
                continue
            if isinstance(data, dict):
                return data

    async def _dispatch(self, message: dict) -> None:
        """Hand one notification to on_log. A returned coroutine is awaited;
        an already scheduled task keeps running while the socket is read."""
        if message.get("method") != "eth_subscription":
            return
        result = (message.get("params") or {}).get("result")
        if not isinstance(result, dict):
            return
        self.notifications_received += 1
        try:
            outcome = self._on_log(result)
            if inspect.iscoroutine(outcome):
                await outcome
        except Exception:
            self.callback_failures += 1
            self._logger.exception("Log callback failed")

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._logger.debug("Connection state %s -> %s", self._state.value, state.value)
        self._state = state
        if state is ConnectionState.SUBSCRIBED:
            self._subscribed.set()
        else:
            self._subscribed.clear()
