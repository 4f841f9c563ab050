"""Reconciliation engine: applies domain events to persisted state.

Every write for a round runs under that round's lock, so an entry for round
X can never interleave with the settlement of round X. Settlement itself is
one SQLite transaction that refuses to resolve a round twice, which makes
duplicate WinnerDrawn deliveries harmless.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable

from . import events as ev
from .events import BetRole, GameKind
from .numeric import payout_multiplier, to_decimal_string, to_safe_number, to_timestamp_ms
from .utils import now_ms

if TYPE_CHECKING:
    from .analytics import AnalyticsCache
    from .block_clock import BlockClock
    from .broadcaster import Broadcaster
    from .database import IndexerDatabase, SettlementResult


class RoundLocks:
    """Keyed asyncio locks. An entry exists only while held or awaited."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# ═══════════════════════════════════════════════════════════════
#  Winner selection policies
# ═══════════════════════════════════════════════════════════════


def choose_duel_winner(bets: list[dict], winner: str) -> dict | None:
    """Address matching: the winner's bet wins, every other bet loses."""
    return next((b for b in bets if b["address"] == winner), None)


def choose_pool_winner(
    bets: list[dict],
    winner: str,
    stake: str | None = None,
    time_ms: int | None = None,
) -> dict | None:
    """Pick the winning entry among the winner's bets in the round.

    With settlement detail (stake and time) the entry with that stake closest
    in time wins; otherwise the winner's most recently created entry.
    """
    candidates = [b for b in bets if b["address"] == winner]
    if not candidates:
        return None
    if stake is not None and time_ms:
        matching = [b for b in candidates if b["stake"] == stake]
        if matching:
            return min(matching, key=lambda b: (abs(b["created_at"] - time_ms), -b["id"]))
    return max(candidates, key=lambda b: (b["created_at"], b["id"]))


def round_key(game_kind: GameKind, round_id: str) -> str:
    return f"{game_kind.value}:{round_id}"


# ═══════════════════════════════════════════════════════════════
#  Engine
# ═══════════════════════════════════════════════════════════════


class ReconciliationEngine:
    """Sole writer of bets, win history and leaderboard derived from the ledger."""

    def __init__(
        self,
        database: IndexerDatabase,
        broadcaster: Broadcaster,
        analytics: AnalyticsCache,
        logger: logging.Logger | None = None,
        block_clock: BlockClock | None = None,
    ) -> None:
        self._db = database
        self._broadcaster = broadcaster
        self._analytics = analytics
        self._logger = logger or logging.getLogger("wave.reconcile")
        self._block_clock = block_clock
        self.locks = RoundLocks()

        self._handlers: dict[type, Callable[..., Awaitable[None]]] = {
            ev.ChallengeCreated: self._on_challenge_created,
            ev.EnteredChallenge: self._on_entered_challenge,
            ev.DuelWinnerDrawn: self._on_duel_winner,
            ev.EnteredPool: self._on_entered_pool,
            ev.PoolWinnerDrawn: self._on_pool_winner,
            ev.PoolCreated: self._on_pool_created,
            ev.PayoutClaimed: self._on_payout_claimed,
        }

        # Metrics counters
        self.events_applied: int = 0
        self.events_failed: int = 0
        self.duplicate_entries: int = 0
        self.late_entries: int = 0
        self.settlements: int = 0
        self.duplicate_settlements: int = 0

    async def apply(self, event: ev.DomainEvent) -> None:
        """Apply one domain event. Errors are logged, never raised."""
        handler = self._handlers.get(type(event))
        if handler is None:
            self._logger.warning("No handler for event type %s", type(event).__name__)
            return
        try:
            await handler(event)
            self.events_applied += 1
        except Exception:
            self.events_failed += 1
            self._logger.exception(
                "Failed to apply %s (tx %s)", type(event).__name__, event.meta.tx_hash,
            )

    # ══════════════════════════════════════════════════════════
    #  Entries
    # ══════════════════════════════════════════════════════════

    async def _on_challenge_created(self, event: ev.ChallengeCreated) -> None:
        await self._record_duel_entry(event.round, event.creator, event.stake, BetRole.CREATOR, event.meta)

    async def _on_entered_challenge(self, event: ev.EnteredChallenge) -> None:
        await self._record_duel_entry(event.round, event.account, event.stake, BetRole.CHALLENGER, event.meta)

    async def _record_duel_entry(
        self, raw_round, address: str, raw_stake, role: BetRole, meta: ev.LogMeta,
    ) -> None:
        round_id = to_decimal_string(raw_round)
        stake = to_decimal_string(raw_stake)
        async with self.locks.hold(round_key(GameKind.DUEL, round_id)):
            created_at = await self._ledger_time(meta)
            created = await self._db.ensure_account(address)
            bet = await self._db.insert_duel_bet(
                address, round_id, role.value, stake, meta.tx_hash, created_at,
            )
        if created:
            self._broadcaster.users_updated()
        if bet is None:
            self.duplicate_entries += 1
            self._logger.debug("Duel %s already has a %s bet; skipping", round_id, role.value)
            return
        self._note_late_entry(bet)
        self._broadcaster.bet_placed(await self._bet_row(bet))
        self._analytics.schedule_recompute()

    async def _on_entered_pool(self, event: ev.EnteredPool) -> None:
        round_id = to_decimal_string(event.pool)
        stake = to_decimal_string(event.stake)
        async with self.locks.hold(round_key(GameKind.POOL, round_id)):
            created_at = await self._ledger_time(event.meta)
            created = await self._db.ensure_account(event.account)
            bet = await self._db.insert_pool_bet(
                event.account, round_id, stake,
                tx_hash=event.meta.tx_hash, created_at=created_at,
            )
        if created:
            self._broadcaster.users_updated()
        self._note_late_entry(bet)
        self._broadcaster.bet_placed(await self._bet_row(bet))
        self._analytics.schedule_recompute()

    def _note_late_entry(self, bet: dict) -> None:
        if bet["outcome"] == "pending":
            return
        self.late_entries += 1
        self._logger.info(
            "Late %s entry for settled round %s by %s recorded as %s",
            bet["game_kind"], bet["round_id"], bet["address"], bet["outcome"],
        )

    async def _ledger_time(self, meta: ev.LogMeta) -> int:
        """Block time of the emitting log, falling back to the receive time."""
        if self._block_clock is None:
            return meta.received_at_ms
        return await self._block_clock.timestamp_ms(meta.block_number, meta.received_at_ms)

    # ══════════════════════════════════════════════════════════
    #  Settlement
    # ══════════════════════════════════════════════════════════

    async def _on_duel_winner(self, event: ev.DuelWinnerDrawn) -> None:
        await self.settle(
            round_id=to_decimal_string(event.round),
            winner=event.winner,
            reward=to_decimal_string(event.reward),
            stake=to_decimal_string(event.stake),
            time_ms=to_timestamp_ms(event.time),
            game_kind=GameKind.DUEL,
            tx_hash=event.meta.tx_hash,
        )

    async def _on_pool_winner(self, event: ev.PoolWinnerDrawn) -> None:
        # The pool event carries neither stake nor time; the winning entry's
        # stake is used and the time comes from the emitting block.
        await self.settle(
            round_id=to_decimal_string(event.pool),
            winner=event.winner,
            reward=to_decimal_string(event.reward),
            stake=None,
            time_ms=None,
            game_kind=GameKind.POOL,
            pool_variant=event.pool_variant,
            tx_hash=event.meta.tx_hash,
            meta=event.meta,
        )

    async def settle(
        self,
        round_id: str,
        winner: str,
        reward: str,
        stake: str | None,
        time_ms: int | None,
        game_kind: GameKind,
        pool_variant: bool | None = None,
        tx_hash: str | None = None,
        meta: ev.LogMeta | None = None,
    ) -> SettlementResult:
        """Resolve a round: one win (duel) or at most one win (pool), rest loss.

        Records the win history row and leaderboard increment in the same
        transaction, then publishes the change and schedules analytics.
        Without *time_ms* the block time of *meta* is used.
        """
        async with self.locks.hold(round_key(game_kind, round_id)):
            if time_ms is None:
                time_ms = await self._ledger_time(meta) if meta is not None else now_ms()

            if game_kind is GameKind.DUEL:
                def chooser(bets: list[dict]) -> dict | None:
                    return choose_duel_winner(bets, winner)
            else:
                def chooser(bets: list[dict]) -> dict | None:
                    return choose_pool_winner(bets, winner, stake, time_ms)

            created = await self._db.ensure_account(winner)
            result = await self._db.settle_round(
                game_kind.value, round_id, winner, reward, stake, time_ms, chooser,
                pool_variant=pool_variant, tx_hash=tx_hash,
            )

        if result.already_settled:
            self.duplicate_settlements += 1
            self._logger.info("%s round %s already settled; ignoring repeat", game_kind.value, round_id)
            return result

        self.settlements += 1
        if not result.bets:
            self._logger.warning(
                "No bets known for %s round %s; recording win for %s anyway",
                game_kind.value, round_id, winner,
            )
        elif result.winning_bet is None:
            self._logger.warning(
                "Winner %s has no bet in %s round %s; all entries marked loss",
                winner, game_kind.value, round_id,
            )

        if created:
            self._broadcaster.users_updated()
        self._broadcaster.leaderboard_updated()
        if result.history:
            self._broadcaster.history_appended(self._history_payload(result.history))
        for bet in result.bets:
            self._broadcaster.bet_placed(await self._bet_row(bet, time_ms))
        if not result.bets and result.history:
            self._broadcaster.bet_placed(await self._history_bet_row(result.history))
        self._analytics.notify_new_history_row()
        return result

    # ══════════════════════════════════════════════════════════
    #  Informational events
    # ══════════════════════════════════════════════════════════

    async def _on_pool_created(self, event: ev.PoolCreated) -> None:
        self._broadcaster.history_appended({
            "type": "pool_created",
            "data": {
                "poolId": to_decimal_string(event.pool),
                "baseToken": event.base_token,
                "limitAmount": to_decimal_string(event.limit),
                "ticketPrice": to_decimal_string(event.ticket_price),
                "poolVariant": event.pool_variant,
            },
        })

    async def _on_payout_claimed(self, event: ev.PayoutClaimed) -> None:
        claimed_at = await self._ledger_time(event.meta)
        self._logger.info(
            "Payout claimed: pool %s by %s (%s)",
            to_decimal_string(event.pool), event.winner, to_decimal_string(event.amount),
        )
        self._broadcaster.history_appended({
            "type": "payout_claimed",
            "data": {
                "gameKind": GameKind.POOL.value,
                "poolId": to_decimal_string(event.pool),
                "winner": event.winner,
                "amount": to_decimal_string(event.amount),
                "timestampMs": claimed_at,
            },
        })

    # ══════════════════════════════════════════════════════════
    #  Payload builders
    # ══════════════════════════════════════════════════════════

    async def _bet_row(self, bet: dict, timestamp_ms: int | None = None) -> dict:
        """bet_placed payload for one persisted bet."""
        username = await self._db.get_display_name(bet["address"])
        return self._row(
            username, bet["game_kind"], bet["stake"], bet["payout"], bet["outcome"],
            timestamp_ms or bet["created_at"],
        )

    async def _history_bet_row(self, history: dict) -> dict:
        username = await self._db.get_display_name(history["address"])
        return self._row(
            username, history["game_kind"], history["stake"], history["reward"], "win",
            history["event_time"],
        )

    @staticmethod
    def _row(username: str, game_kind: str, stake: str, payout: str, outcome: str, ts: int) -> dict:
        row = {
            "username": username,
            "gameKind": game_kind,
            "amount": to_safe_number(stake),
            "outcome": outcome,
            "timestampMs": ts,
        }
        payout_num = to_safe_number(payout)
        if payout_num > 0:
            row["payout"] = payout_num
        multiplier = payout_multiplier(stake, payout)
        if multiplier is not None:
            row["multiplier"] = multiplier
        return row

    @staticmethod
    def _history_payload(history: dict) -> dict:
        return {
            "address": history["address"],
            "gameKind": history["game_kind"],
            "poolVariant": None if history["pool_variant"] is None else bool(history["pool_variant"]),
            "reward": history["reward"],
            "stake": history["stake"],
            "timestampMs": history["event_time"],
            "roundId": history["round_id"],
            "txHash": history["tx_hash"],
        }
