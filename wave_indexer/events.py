"""Typed domain events decoded from ledger logs.

Numeric fields keep the raw decoded value; the reconciliation engine
normalizes them immediately before use.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from .utils import now_ms


class GameKind(str, Enum):
    DUEL = "duel"
    POOL = "pool"


class BetRole(str, Enum):
    CREATOR = "creator"
    CHALLENGER = "challenger"
    ENTRANT = "entrant"


class BetOutcome(str, Enum):
    PENDING = "pending"
    WIN = "win"
    LOSS = "loss"


@dataclass(frozen=True)
class LogMeta:
    """Where a decoded event came from."""

    contract: str = ""
    tx_hash: str | None = None
    block_number: int = 0
    log_index: int = 0
    received_at_ms: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class ChallengeCreated:
    round: Any
    creator: str
    stake: Any
    meta: LogMeta = field(default_factory=LogMeta)


@dataclass(frozen=True)
class EnteredChallenge:
    round: Any
    account: str
    stake: Any
    meta: LogMeta = field(default_factory=LogMeta)


@dataclass(frozen=True)
class DuelWinnerDrawn:
    round: Any
    participant_a: str
    participant_b: str
    stake: Any
    result_flag: bool
    winner: str
    time: Any
    reward: Any
    meta: LogMeta = field(default_factory=LogMeta)


@dataclass(frozen=True)
class PoolCreated:
    pool: Any
    base_token: str
    limit: Any
    ticket_price: Any
    pool_variant: bool | None
    meta: LogMeta = field(default_factory=LogMeta)


@dataclass(frozen=True)
class EnteredPool:
    pool: Any
    account: str
    stake: Any
    meta: LogMeta = field(default_factory=LogMeta)


@dataclass(frozen=True)
class PoolWinnerDrawn:
    pool: Any
    winner: str
    reward: Any
    pool_variant: bool | None = None
    meta: LogMeta = field(default_factory=LogMeta)


@dataclass(frozen=True)
class PayoutClaimed:
    pool: Any
    winner: str
    amount: Any
    meta: LogMeta = field(default_factory=LogMeta)


DomainEvent = Union[
    ChallengeCreated,
    EnteredChallenge,
    DuelWinnerDrawn,
    PoolCreated,
    EnteredPool,
    PoolWinnerDrawn,
    PayoutClaimed,
]
