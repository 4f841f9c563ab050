"""Shared test fixtures for wave-indexer."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, AsyncGenerator
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from wave_indexer.analytics import AnalyticsCache
from wave_indexer.broadcaster import Broadcaster
from wave_indexer.config import IndexerConfig
from wave_indexer.database import IndexerDatabase
from wave_indexer.events import LogMeta
from wave_indexer.reconciliation import ReconciliationEngine

CHALLENGE_ADDRESS = "0x" + "c1" * 20
POOL_ADDRESS = "0x" + "b0" * 20
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20


# ── Minimal config dict matching IndexerConfig schema ────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "ledger": {"ws_url": "wss://ledger.test/ws", "reconnect_delay_seconds": 0.01},
        "contracts": {
            "challenge": {"address": CHALLENGE_ADDRESS},
            "pool": {"address": POOL_ADDRESS},
        },
        "database": {"path": ":memory:"},
        "analytics": {"window_days": 7, "max_age_seconds": 10, "debounce_seconds": 0.05},
        "broadcast": {"path": "/ws", "leaderboard_limit": 50},
        "server": {"host": "127.0.0.1", "port": 0},
    }
    base.update(overrides)
    return base


def meta(tx: str = "0xabc", received_at_ms: int | None = None, **kwargs) -> LogMeta:
    """LogMeta with a fixed receive time when given."""
    if received_at_ms is not None:
        kwargs["received_at_ms"] = received_at_ms
    return LogMeta(tx_hash=tx, **kwargs)


class FakeSink:
    """Subscriber sink that records every message it is sent."""

    def __init__(self, fail: bool = False) -> None:
        self.messages: list[dict] = []
        self.fail = fail
        self.closed = False

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionResetError("sink gone")
        self.messages.append(data)

    async def close(self) -> None:
        self.closed = True

    def events(self, name: str | None = None) -> list[dict]:
        return [m for m in self.messages if name is None or m["event"] == name]


@pytest.fixture
def sample_config_dict() -> dict:
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> IndexerConfig:
    return IndexerConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Temporary database path."""
    return str(tmp_path / "test_wave.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[IndexerDatabase, None]:
    """Provide an initialized database with temp file."""
    db = IndexerDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


@pytest.fixture
def mock_broadcaster() -> MagicMock:
    return MagicMock(spec=Broadcaster)


@pytest.fixture
def mock_analytics() -> MagicMock:
    return MagicMock(spec=AnalyticsCache)


@pytest_asyncio.fixture
async def broadcaster(database: IndexerDatabase) -> AsyncGenerator[Broadcaster, None]:
    b = Broadcaster(database, logging.getLogger("test"))
    yield b
    await b.drain()


@pytest_asyncio.fixture
async def engine(
    database: IndexerDatabase,
    mock_broadcaster: MagicMock,
    mock_analytics: MagicMock,
) -> ReconciliationEngine:
    return ReconciliationEngine(database, mock_broadcaster, mock_analytics, logging.getLogger("test"))
