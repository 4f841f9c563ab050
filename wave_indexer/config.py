"""Configuration system for wave-indexer.

All sections are Pydantic models with sensible defaults. The ledger endpoint
and both contract addresses are required; a config without them fails
validation and the service refuses to start.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from .utils import is_address, normalize_address


# ═══════════════════════════════════════════════════════════════
#  Ledger & Contracts
# ═══════════════════════════════════════════════════════════════

class LedgerConfig(BaseModel):
    ws_url: str = Field(description="Websocket JSON-RPC endpoint of the ledger node")
    reconnect_delay_seconds: float = 2.0
    heartbeat_seconds: float = 20.0
    subscribe_timeout_seconds: float = 15.0
    http_url: str | None = Field(
        default=None,
        description="HTTP JSON-RPC endpoint for block timestamps; derived from ws_url when unset",
    )
    block_cache_size: int = Field(default=500, ge=1)
    block_lookup_timeout_seconds: float = 5.0

    @field_validator("ws_url")
    @classmethod
    def _check_ws_url(cls, value: str) -> str:
        value = value.strip()
        if not re.match(r"^wss?://[^/\s]+", value):
            raise ValueError(f"ledger.ws_url must be a ws:// or wss:// URL, got {value!r}")
        return value

    @property
    def rpc_http_url(self) -> str:
        if self.http_url:
            return self.http_url
        return re.sub(r"^ws", "http", self.ws_url)


class ContractConfig(BaseModel):
    address: str
    abi_path: str | None = Field(
        default=None,
        description="Hardhat artifact or raw ABI JSON; built-in event ABI used when unset",
    )

    @field_validator("address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        if not is_address(value.strip()):
            raise ValueError(f"not a contract address: {value!r}")
        return normalize_address(value)


class ContractsConfig(BaseModel):
    challenge: ContractConfig
    pool: ContractConfig


# ═══════════════════════════════════════════════════════════════
#  Storage, Analytics, Broadcast
# ═══════════════════════════════════════════════════════════════

class DatabaseConfig(BaseModel):
    path: str = "wave.db"


class AnalyticsConfig(BaseModel):
    window_days: int = Field(default=7, ge=1, le=366)
    max_age_seconds: float = 10.0
    debounce_seconds: float = 1.5


class BroadcastConfig(BaseModel):
    path: str = "/ws"
    leaderboard_limit: int = 50


class ServerConfig(BaseModel):
    """aiohttp server hosting the subscriber websocket, /metrics and /health."""

    host: str = "0.0.0.0"
    port: int = 28390


# ═══════════════════════════════════════════════════════════════
#  Top-Level Config
# ═══════════════════════════════════════════════════════════════

class IndexerConfig(BaseModel):
    """Full indexer config."""

    ledger: LedgerConfig
    contracts: ContractsConfig
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    broadcast: BroadcastConfig = Field(default_factory=BroadcastConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

_ENV_REF = re.compile(r"\$\{([^}:]+)(?::-(.*?))?\}")


def _env_value(match: re.Match) -> str:
    return os.environ.get(match.group(1), match.group(2) or "")


def _expand_env_vars(obj: Any) -> Any:
    """Expand ${VAR} and ${VAR:-default} in every string of a parsed YAML tree."""
    if isinstance(obj, dict):
        return {key: _expand_env_vars(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_vars(value) for value in obj]
    if isinstance(obj, str):
        return _ENV_REF.sub(_env_value, obj)
    return obj


def load_config(config_path: str | Path) -> IndexerConfig:
    """Read *config_path*, expand environment references and validate.

    A missing file raises FileNotFoundError; anything that does not validate
    raises ValueError (pydantic's ValidationError is one).
    """
    path = Path(config_path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise FileNotFoundError(f"Config file not found: {config_path}") from None

    raw = yaml.safe_load(text)
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a YAML mapping at the top level")
    return IndexerConfig.model_validate(_expand_env_vars(raw))
