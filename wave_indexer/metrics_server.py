"""HTTP surface for wave-indexer.

One aiohttp application serves Prometheus metrics on ``/metrics``, a JSON
health report on ``/health`` and the broadcast websocket route.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiohttp import web

from .connection import ConnectionState

if TYPE_CHECKING:
    from .main import IndexerApp


class IndexerMetricsServer:
    """Prometheus metrics, health and subscriber websocket endpoint."""

    def __init__(
        self,
        app: IndexerApp,
        host: str = "0.0.0.0",
        port: int = 28390,
        ws_path: str = "/ws",
        logger: logging.Logger | None = None,
    ) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._ws_path = ws_path
        self._logger = logger or logging.getLogger("wave.server")
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        web_app = web.Application()
        web_app.router.add_get("/metrics", self.metrics_handler)
        web_app.router.add_get("/health", self.health_handler)
        web_app.router.add_get(self._ws_path, self._app.broadcaster.websocket_handler)
        return web_app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, host=self._host, port=self._port)
        await site.start()
        self._logger.info(
            "HTTP server on %s:%d (metrics, health, websocket %s)", self._host, self._port, self._ws_path,
        )

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ── Handlers ─────────────────────────────────────────────

    async def metrics_handler(self, request: web.Request) -> web.Response:
        lines = await self.collect_metrics()
        return web.Response(text="\n".join(lines) + "\n", content_type="text/plain")

    async def health_handler(self, request: web.Request) -> web.Response:
        app = self._app
        state = app.supervisor.state if app.supervisor else ConnectionState.DISCONNECTED
        snapshot = app.analytics.snapshot if app.analytics else None
        return web.json_response({
            "ok": state is ConnectionState.SUBSCRIBED,
            "connection": state.value,
            "database": "connected" if app.db else "disconnected",
            "subscribers": app.broadcaster.subscriber_count if app.broadcaster else 0,
            "analyticsComputedAt": snapshot.computed_at if snapshot else None,
            "uptimeSeconds": round(app.uptime_seconds, 1),
        })

    async def collect_metrics(self) -> list[str]:
        """Prometheus text lines for the current counters."""
        app = self._app
        lines: list[str] = []

        # ── Counters ─────────────────────────────────────────
        router = app.router
        lines.append(f"wave_logs_received_total {router.logs_received if router else 0}")
        lines.append(f"wave_logs_dropped_total {router.logs_dropped if router else 0}")

        engine = app.engine
        lines.append(f"wave_events_applied_total {engine.events_applied if engine else 0}")
        lines.append(f"wave_events_failed_total {engine.events_failed if engine else 0}")
        lines.append(f"wave_settlements_total {engine.settlements if engine else 0}")
        lines.append(
            f"wave_duplicate_settlements_total {engine.duplicate_settlements if engine else 0}"
        )
        lines.append(f"wave_late_entries_total {engine.late_entries if engine else 0}")

        supervisor = app.supervisor
        lines.append(f"wave_reconnects_total {supervisor.reconnects if supervisor else 0}")

        clock = app.block_clock
        lines.append(f"wave_block_lookups_total {clock.lookups if clock else 0}")
        lines.append(f"wave_block_lookup_failures_total {clock.lookup_failures if clock else 0}")

        analytics = app.analytics
        lines.append(f"wave_analytics_recomputes_total {analytics.recompute_count if analytics else 0}")
        lines.append(
            f"wave_analytics_recompute_failures_total {analytics.recompute_failures if analytics else 0}"
        )

        broadcaster = app.broadcaster
        lines.append(f"wave_messages_sent_total {broadcaster.messages_sent if broadcaster else 0}")
        lines.append(f"wave_send_failures_total {broadcaster.send_failures if broadcaster else 0}")

        # ── Gauges ───────────────────────────────────────────
        lines.append(f"wave_subscribers {broadcaster.subscriber_count if broadcaster else 0}")
        current = supervisor.state if supervisor else ConnectionState.DISCONNECTED
        for state in ConnectionState:
            value = 1 if state is current else 0
            lines.append(f'wave_connection_state{{state="{state.value}"}} {value}')
        lines.append(f"wave_uptime_seconds {app.uptime_seconds:.1f}")
        return lines
