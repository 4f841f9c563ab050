"""Block timestamp lookups for ledger-time bookkeeping.

Entry rows, pool draws and payout claims carry no time of their own, so the
engine asks for the timestamp of the block that emitted them. Lookups go
through a web3 HTTP provider in a worker thread and are cached per block.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Callable

from web3 import Web3

from .numeric import to_timestamp_ms


def web3_block_fetcher(http_url: str, timeout: float = 5.0) -> Callable[[int], Any]:
    """Blocking ``eth_getBlockByNumber`` through a web3 HTTP provider."""
    w3 = Web3(Web3.HTTPProvider(http_url, request_kwargs={"timeout": timeout}))

    def fetch(block_number: int) -> Any:
        return w3.eth.get_block(block_number)

    return fetch


class BlockClock:
    """Resolves block numbers to epoch-ms timestamps with an LRU cache."""

    def __init__(
        self,
        fetch_block: Callable[[int], Any] | None,
        logger: logging.Logger | None = None,
        cache_size: int = 500,
        timeout: float = 5.0,
    ) -> None:
        self._fetch_block = fetch_block
        self._logger = logger or logging.getLogger("wave.blocks")
        self._cache_size = cache_size
        self._timeout = timeout
        self._cache: OrderedDict[int, int] = OrderedDict()

        # Metrics counters
        self.lookups: int = 0
        self.lookup_failures: int = 0

    async def timestamp_ms(self, block_number: int, fallback_ms: int) -> int:
        """Block time in ms, or *fallback_ms* when it cannot be resolved."""
        if not block_number or self._fetch_block is None:
            return fallback_ms

        cached = self._cache.get(block_number)
        if cached is not None:
            self._cache.move_to_end(block_number)
            return cached

        self.lookups += 1
        try:
            block = await asyncio.wait_for(
                asyncio.to_thread(self._fetch_block, block_number), self._timeout,
            )
            ts = to_timestamp_ms(block["timestamp"])
        except Exception as exc:
            self.lookup_failures += 1
            self._logger.warning("Failed to get timestamp for block %d: %s", block_number, exc)
            return fallback_ms
        if ts <= 0:
            self.lookup_failures += 1
            self._logger.warning("Block %d has no usable timestamp", block_number)
            return fallback_ms

        self._cache[block_number] = ts
        if len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
        return ts

    def __len__(self) -> int:
        return len(self._cache)
