"""Event router: raw ledger logs in, typed domain events out.

Each contract registers its event ABI; a log is routed by
``(contract address, topic0)``, decoded with eth_abi and handed to the
reconciliation handler. Anything unrecognised or undecodable is logged and
dropped; nothing in here is allowed to stop the subscription.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from eth_abi.abi import decode as abi_decode
from web3 import Web3

from . import events as ev
from .numeric import to_int
from .utils import normalize_address, now_ms

# Built-in event ABIs, field order as emitted. A contract's ``abi_path`` in
# config replaces these (and supplies the real ``indexed`` flags).
CHALLENGE_EVENTS_ABI: list[dict] = [
    {
        "type": "event",
        "name": "ChallengeCreated",
        "inputs": [
            {"name": "challengeId", "type": "uint256", "indexed": False},
            {"name": "creator", "type": "address", "indexed": False},
            {"name": "xpAmount", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "EnteredChallenge",
        "inputs": [
            {"name": "challengeId", "type": "uint256", "indexed": False},
            {"name": "user", "type": "address", "indexed": False},
            {"name": "xpAmount", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "WinnerDrawn",
        "inputs": [
            {"name": "challengeId", "type": "uint256", "indexed": False},
            {"name": "p1", "type": "address", "indexed": False},
            {"name": "p2", "type": "address", "indexed": False},
            {"name": "wager", "type": "uint256", "indexed": False},
            {"name": "result", "type": "bool", "indexed": False},
            {"name": "winner", "type": "address", "indexed": False},
            {"name": "time", "type": "uint256", "indexed": False},
            {"name": "reward", "type": "uint256", "indexed": False},
        ],
    },
]

POOL_EVENTS_ABI: list[dict] = [
    {
        "type": "event",
        "name": "PoolCreated",
        "inputs": [
            {"name": "poolId", "type": "uint256", "indexed": False},
            {"name": "baseToken", "type": "address", "indexed": False},
            {"name": "limitAmount", "type": "uint256", "indexed": False},
            {"name": "ticketPrice", "type": "uint256", "indexed": False},
            {"name": "poolType", "type": "bool", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "EnteredPool",
        "inputs": [
            {"name": "poolId", "type": "uint256", "indexed": False},
            {"name": "user", "type": "address", "indexed": False},
            {"name": "xpAmount", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "WinnerDrawn",
        "inputs": [
            {"name": "poolId", "type": "uint256", "indexed": False},
            {"name": "winner", "type": "address", "indexed": False},
            {"name": "reward", "type": "uint256", "indexed": False},
            {"name": "poolType", "type": "bool", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "WinnerDrawn",
        "inputs": [
            {"name": "poolId", "type": "uint256", "indexed": False},
            {"name": "winner", "type": "address", "indexed": False},
            {"name": "reward", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "PayoutClaimed",
        "inputs": [
            {"name": "poolId", "type": "uint256", "indexed": False},
            {"name": "winner", "type": "address", "indexed": False},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
    },
]

BUILTIN_ABIS: dict[str, list[dict]] = {
    "challenge": CHALLENGE_EVENTS_ABI,
    "pool": POOL_EVENTS_ABI,
}


def _build_duel_winner(v: list, meta: ev.LogMeta) -> ev.DuelWinnerDrawn:
    return ev.DuelWinnerDrawn(
        round=v[0], participant_a=normalize_address(v[1]), participant_b=normalize_address(v[2]),
        stake=v[3], result_flag=bool(v[4]), winner=normalize_address(v[5]),
        time=v[6], reward=v[7], meta=meta,
    )


def _build_pool_winner(v: list, meta: ev.LogMeta) -> ev.PoolWinnerDrawn:
    variant = bool(v[3]) if len(v) > 3 else None
    return ev.PoolWinnerDrawn(
        pool=v[0], winner=normalize_address(v[1]), reward=v[2], pool_variant=variant, meta=meta,
    )


# (contract kind, event name) -> builder taking positional values
_BUILDERS: dict[tuple[str, str], Callable[[list, ev.LogMeta], ev.DomainEvent]] = {
    ("challenge", "ChallengeCreated"): lambda v, m: ev.ChallengeCreated(
        round=v[0], creator=normalize_address(v[1]), stake=v[2], meta=m,
    ),
    ("challenge", "EnteredChallenge"): lambda v, m: ev.EnteredChallenge(
        round=v[0], account=normalize_address(v[1]), stake=v[2], meta=m,
    ),
    ("challenge", "WinnerDrawn"): _build_duel_winner,
    ("pool", "PoolCreated"): lambda v, m: ev.PoolCreated(
        pool=v[0], base_token=normalize_address(v[1]), limit=v[2],
        ticket_price=v[3], pool_variant=bool(v[4]), meta=m,
    ),
    ("pool", "EnteredPool"): lambda v, m: ev.EnteredPool(
        pool=v[0], account=normalize_address(v[1]), stake=v[2], meta=m,
    ),
    ("pool", "WinnerDrawn"): _build_pool_winner,
    ("pool", "PayoutClaimed"): lambda v, m: ev.PayoutClaimed(
        pool=v[0], winner=normalize_address(v[1]), amount=v[2], meta=m,
    ),
}


@dataclass(frozen=True)
class EventSpec:
    """One decodable event of one contract kind."""

    contract_kind: str
    name: str
    inputs: tuple[tuple[str, bool], ...]  # (abi type, indexed)

    @classmethod
    def from_abi(cls, contract_kind: str, entry: dict) -> EventSpec:
        inputs = tuple(
            (str(i["type"]), bool(i.get("indexed", False))) for i in entry.get("inputs", [])
        )
        return cls(contract_kind, str(entry["name"]), inputs)

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(t for t, _ in self.inputs)})"

    @property
    def topic(self) -> str:
        return Web3.to_hex(Web3.keccak(text=self.signature)).lower()

    def decode(self, topics: list[bytes], data: bytes) -> list[Any]:
        """Decode positional values; indexed params come from topics[1:]."""
        indexed_types = [t for t, indexed in self.inputs if indexed]
        data_types = [t for t, indexed in self.inputs if not indexed]
        if len(topics) - 1 < len(indexed_types):
            raise ValueError(f"{self.name}: expected {len(indexed_types)} indexed topics")

        indexed_values = [
            abi_decode([t], topic)[0] if _is_static(t) else topic
            for t, topic in zip(indexed_types, topics[1:])
        ]
        data_values = list(abi_decode(data_types, data)) if data_types else []

        values: list[Any] = []
        for _, indexed in self.inputs:
            values.append(indexed_values.pop(0) if indexed else data_values.pop(0))
        return values


def _is_static(abi_type: str) -> bool:
    return abi_type not in ("string", "bytes") and not abi_type.endswith("]")


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value or "")
    return bytes.fromhex(text[2:] if text.startswith("0x") else text)


def load_abi_file(path: str) -> list[dict]:
    """Load event entries from a Hardhat artifact or a raw ABI JSON array."""
    with open(Path(path), "r", encoding="utf-8") as f:
        raw = json.load(f)
    abi = raw.get("abi", []) if isinstance(raw, dict) else raw
    if not isinstance(abi, list):
        raise ValueError(f"No ABI array in {path}")
    return [entry for entry in abi if entry.get("type") == "event"]


class EventRouter:
    """Maps raw logs to typed events and dispatches them."""

    def __init__(
        self,
        handler: Callable[[ev.DomainEvent], Awaitable[None]],
        logger: logging.Logger | None = None,
    ) -> None:
        self._handler = handler
        self._logger = logger or logging.getLogger("wave.router")
        # {(contract address, topic0): EventSpec}
        self._routes: dict[tuple[str, str], EventSpec] = {}
        self._contracts: dict[str, list[str]] = {}
        self._tasks: set[asyncio.Task] = set()

        # Metrics counters
        self.logs_received: int = 0
        self.events_dispatched: int = 0
        self.logs_dropped: int = 0

    # ── Registration ─────────────────────────────────────────

    def register_contract(
        self, contract_kind: str, address: str, abi: list[dict] | None = None,
    ) -> None:
        """Register every known event of *contract_kind* at *address*."""
        address = normalize_address(address)
        entries = abi if abi is not None else BUILTIN_ABIS[contract_kind]
        topics: list[str] = []
        for entry in entries:
            if entry.get("type", "event") != "event":
                continue
            spec = EventSpec.from_abi(contract_kind, entry)
            if (contract_kind, spec.name) not in _BUILDERS:
                continue
            self._routes[(address, spec.topic)] = spec
            topics.append(spec.topic)
        self._contracts[address] = topics
        self._logger.info(
            "Registered %s contract %s (%d event topics)", contract_kind, address, len(topics),
        )

    def subscription_filters(self) -> list[dict]:
        """One eth_subscribe log filter per registered contract."""
        return [
            {"address": address, "topics": [topics]}
            for address, topics in self._contracts.items()
        ]

    # ── Decoding ─────────────────────────────────────────────

    def decode(self, log: dict) -> ev.DomainEvent | None:
        """Decode a raw log into a domain event; None if it must be dropped."""
        if not isinstance(log, dict):
            self._logger.warning("Dropping non-object log payload: %r", log)
            return None
        if log.get("removed"):
            self._logger.warning(
                "Dropping removed (reorged) log %s:%s", log.get("transactionHash"), log.get("logIndex"),
            )
            return None

        address = normalize_address(log.get("address"))
        raw_topics = log.get("topics") or []
        if not raw_topics:
            self._logger.warning("Dropping log without topics from %s", address)
            return None

        topic0 = str(raw_topics[0]).lower()
        spec = self._routes.get((address, topic0))
        if spec is None:
            self._logger.warning("Dropping unknown event %s from %s", topic0, address)
            return None

        try:
            values = spec.decode(
                [_to_bytes(t) for t in raw_topics], _to_bytes(log.get("data", "0x")),
            )
            meta = ev.LogMeta(
                contract=address,
                tx_hash=log.get("transactionHash"),
                block_number=to_int(log.get("blockNumber")),
                log_index=to_int(log.get("logIndex")),
                received_at_ms=now_ms(),
            )
            return _BUILDERS[(spec.contract_kind, spec.name)](values, meta)
        except Exception as exc:
            self._logger.warning(
                "Failed to decode %s at %s (tx %s): %s",
                spec.name, address, log.get("transactionHash"), exc,
            )
            return None

    # ── Dispatch ─────────────────────────────────────────────

    async def handle_log(self, log: dict) -> None:
        """Decode and dispatch one log. Never raises."""
        self.logs_received += 1
        event = self.decode(log)
        if event is None:
            self.logs_dropped += 1
            return
        try:
            await self._handler(event)
            self.events_dispatched += 1
        except Exception:
            self._logger.exception("Handler failed for %s", type(event).__name__)

    def submit(self, log: dict) -> asyncio.Task:
        """Schedule handle_log without blocking the transport loop."""
        task = asyncio.create_task(self.handle_log(log))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every in-flight handler task."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
