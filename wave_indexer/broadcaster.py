"""Broadcast fan-out: push persisted state changes to live subscribers.

Every notification is a ``{"event": name, "data": payload}`` JSON message.
Publishing is fire-and-forget: callers never await delivery, a failing
subscriber is dropped without affecting the others, and nothing here can
fail a database write that already committed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from itertools import count
from typing import TYPE_CHECKING, Any, Protocol

from aiohttp import WSMsgType, web

from .utils import normalize_address

if TYPE_CHECKING:
    from .database import IndexerDatabase

LEADERBOARD_UPDATED = "leaderboard_updated"
HISTORY_APPENDED = "history_appended"
BET_PLACED = "bet_placed"
USERS_UPDATED = "users_updated"
ANALYTICS_UPDATED = "analytics_updated"
ACCOUNT_KICKED = "account_kicked"

_subscriber_ids = count(1)


class MessageSink(Protocol):
    async def send_json(self, data: Any) -> None: ...


@dataclass(eq=False)
class Subscriber:
    """One connected real-time client."""

    sink: MessageSink
    account_id: str | None = None
    id: int = field(default_factory=lambda: next(_subscriber_ids))


class Broadcaster:
    """Fan-out of typed notifications to all subscribers and account channels."""

    def __init__(
        self,
        database: IndexerDatabase,
        logger: logging.Logger | None = None,
        leaderboard_limit: int = 50,
    ) -> None:
        self._db = database
        self._logger = logger or logging.getLogger("wave.broadcast")
        self._leaderboard_limit = leaderboard_limit
        self._subscribers: dict[int, Subscriber] = {}
        self._tasks: set[asyncio.Task] = set()

        # Metrics counters
        self.messages_sent: int = 0
        self.send_failures: int = 0

    # ── Subscribers ──────────────────────────────────────────

    def subscribe(self, sink: MessageSink, account_id: str | None = None) -> Subscriber:
        subscriber = Subscriber(sink=sink, account_id=normalize_address(account_id) or None)
        self._subscribers[subscriber.id] = subscriber
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.pop(subscriber.id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ── Publishing ───────────────────────────────────────────

    def publish(self, event: str, payload: Any = None) -> None:
        """Send to every subscriber without waiting for delivery."""
        self._spawn(self._fan_out(list(self._subscribers.values()), event, payload))

    def publish_to_account(self, account_id: str, event: str, payload: Any = None) -> None:
        """Send only to subscribers bound to *account_id*."""
        account_id = normalize_address(account_id)
        targets = [s for s in self._subscribers.values() if s.account_id == account_id]
        self._spawn(self._fan_out(targets, event, payload))

    def leaderboard_updated(self) -> None:
        self._spawn(self._publish_leaderboard())

    def history_appended(self, payload: dict) -> None:
        self.publish(HISTORY_APPENDED, payload)

    def bet_placed(self, row: dict) -> None:
        self.publish(BET_PLACED, row)

    def users_updated(self) -> None:
        self.publish(USERS_UPDATED)

    def analytics_updated(self, payload: dict) -> None:
        self.publish(ANALYTICS_UPDATED, payload)

    def account_kicked(self, account_id: str) -> None:
        self.publish_to_account(account_id, ACCOUNT_KICKED, {"accountId": normalize_address(account_id)})

    async def drain(self) -> None:
        """Wait for all outstanding deliveries (tests, shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Drain and close every websocket subscriber."""
        await self.drain()
        for subscriber in list(self._subscribers.values()):
            close = getattr(subscriber.sink, "close", None)
            if close is not None:
                try:
                    await close()
                except Exception as exc:
                    self._logger.debug("Closing subscriber %d failed: %s", subscriber.id, exc)
        self._subscribers.clear()

    # ── aiohttp route ────────────────────────────────────────

    async def websocket_handler(self, request: web.Request) -> web.WebSocketResponse:
        """Register a websocket subscriber; ``?account=`` joins its private channel."""
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        subscriber = self.subscribe(ws, request.query.get("account"))
        self._logger.info(
            "Subscriber %d connected (account=%s)", subscriber.id, subscriber.account_id or "-",
        )
        try:
            rows = await self._db.get_top_leaderboard(self._leaderboard_limit)
            await ws.send_json({"event": LEADERBOARD_UPDATED, "data": rows})
        except Exception as exc:
            self._logger.warning("Failed to send initial leaderboard: %s", exc)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    self._logger.warning("Subscriber %d error: %s", subscriber.id, ws.exception())
        finally:
            self.unsubscribe(subscriber)
            self._logger.info("Subscriber %d disconnected", subscriber.id)
        return ws

    # ── Internal ─────────────────────────────────────────────

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _publish_leaderboard(self) -> None:
        try:
            rows = await self._db.get_top_leaderboard(self._leaderboard_limit)
        except Exception:
            self._logger.exception("Leaderboard fetch for broadcast failed")
            return
        await self._fan_out(list(self._subscribers.values()), LEADERBOARD_UPDATED, rows)

    async def _fan_out(self, targets: list[Subscriber], event: str, payload: Any) -> None:
        if not targets:
            return
        message = {"event": event, "data": payload}
        await asyncio.gather(*(self._send(s, message) for s in targets))

    async def _send(self, subscriber: Subscriber, message: dict) -> None:
        try:
            await subscriber.sink.send_json(message)
            self.messages_sent += 1
        except Exception as exc:
            self.send_failures += 1
            self._logger.warning(
                "Dropping subscriber %d after send failure: %s", subscriber.id, exc,
            )
            self.unsubscribe(subscriber)
