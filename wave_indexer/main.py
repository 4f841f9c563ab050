"""Service orchestrator: IndexerApp.

Start order:
config → DB init → broadcaster → analytics → block clock + engine → router →
HTTP server → ledger subscription. ``stop()`` unwinds the same chain in reverse.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from . import __version__
from .analytics import AnalyticsCache
from .block_clock import BlockClock, web3_block_fetcher
from .broadcaster import Broadcaster
from .config import IndexerConfig, load_config
from .connection import ConnectionSupervisor
from .database import IndexerDatabase
from .event_router import EventRouter, load_abi_file
from .metrics_server import IndexerMetricsServer
from .reconciliation import ReconciliationEngine
from .utils import normalize_address


class IndexerApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("wave")

        # Components (initialized in start())
        self.config: IndexerConfig | None = None
        self.db: IndexerDatabase | None = None
        self.broadcaster: Broadcaster | None = None
        self.analytics: AnalyticsCache | None = None
        self.block_clock: BlockClock | None = None
        self.engine: ReconciliationEngine | None = None
        self.router: EventRouter | None = None
        self.metrics_server: IndexerMetricsServer | None = None
        self.supervisor: ConnectionSupervisor | None = None

        # State
        self._running = False
        self._start_time: float | None = None
        self._stopped = asyncio.Event()

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    async def start(self) -> None:
        """Bring every component up. Returns once the subscription loop is running."""
        # 1. Config
        self.config = load_config(str(self.config_path))
        cfg = self.config
        self.logger.info("Config loaded from %s", self.config_path)

        # 2. Database
        self.db = IndexerDatabase(cfg.database.path, logging.getLogger("wave.db"))
        await self.db.initialize()

        # 3. Fan-out
        self.broadcaster = Broadcaster(
            self.db, logging.getLogger("wave.broadcast"),
            leaderboard_limit=cfg.broadcast.leaderboard_limit,
        )

        # 4. Analytics
        self.analytics = AnalyticsCache(
            self.db,
            logging.getLogger("wave.analytics"),
            broadcaster=self.broadcaster,
            max_age_seconds=cfg.analytics.max_age_seconds,
            debounce_seconds=cfg.analytics.debounce_seconds,
            default_window_days=cfg.analytics.window_days,
        )
        await self.analytics.start()

        # 5. Reconciliation (ledger time from block timestamps)
        self.block_clock = BlockClock(
            web3_block_fetcher(cfg.ledger.rpc_http_url, cfg.ledger.block_lookup_timeout_seconds),
            logging.getLogger("wave.blocks"),
            cache_size=cfg.ledger.block_cache_size,
            timeout=cfg.ledger.block_lookup_timeout_seconds,
        )
        self.engine = ReconciliationEngine(
            self.db, self.broadcaster, self.analytics, logging.getLogger("wave.reconcile"),
            block_clock=self.block_clock,
        )

        # 6. Routing
        self.router = EventRouter(self.engine.apply, logging.getLogger("wave.router"))
        for kind, contract in (("challenge", cfg.contracts.challenge), ("pool", cfg.contracts.pool)):
            abi = load_abi_file(contract.abi_path) if contract.abi_path else None
            self.router.register_contract(kind, contract.address, abi)

        # 7. HTTP server (metrics, health, websocket)
        self.metrics_server = IndexerMetricsServer(
            self,
            host=cfg.server.host,
            port=cfg.server.port,
            ws_path=cfg.broadcast.path,
            logger=logging.getLogger("wave.server"),
        )
        await self.metrics_server.start()

        # 8. Ledger subscription
        self.supervisor = ConnectionSupervisor(
            cfg.ledger.ws_url,
            self.router.subscription_filters(),
            self.router.submit,
            logging.getLogger("wave.connection"),
            reconnect_delay=cfg.ledger.reconnect_delay_seconds,
            heartbeat=cfg.ledger.heartbeat_seconds,
            subscribe_timeout=cfg.ledger.subscribe_timeout_seconds,
        )
        await self.supervisor.start()

        self._running = True
        self._start_time = time.time()
        self._stopped.clear()
        self.logger.info("wave-indexer started successfully (v%s)", __version__)

    async def run(self) -> None:
        """Start, then block until ``stop()`` is called."""
        await self.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        if not self._running:
            self._stopped.set()
            return
        self.logger.info("Shutting down wave-indexer...")
        self._running = False

        if self.supervisor:
            await self.supervisor.stop()
        if self.metrics_server:
            await self.metrics_server.stop()
        if self.router:
            await self.router.drain()
        if self.analytics:
            await self.analytics.stop()
        if self.broadcaster:
            await self.broadcaster.close()

        self._stopped.set()
        self.logger.info("wave-indexer stopped.")

    # ══════════════════════════════════════════════════════════
    #  Account administration
    # ══════════════════════════════════════════════════════════

    async def ban_account(self, address: str) -> None:
        """Ban an account and kick its live sessions."""
        address = normalize_address(address)
        await self.db.set_banned(address, True)
        self.broadcaster.account_kicked(address)
        self.broadcaster.users_updated()
        self.logger.info("Banned account %s", address)

    async def unban_account(self, address: str) -> None:
        address = normalize_address(address)
        await self.db.set_banned(address, False)
        self.broadcaster.users_updated()
        self.logger.info("Unbanned account %s", address)
