"""Tests for wave_indexer.reconciliation module."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from wave_indexer import events as ev
from wave_indexer.block_clock import BlockClock
from wave_indexer.database import IndexerDatabase
from wave_indexer.events import GameKind
from wave_indexer.reconciliation import (
    ReconciliationEngine,
    RoundLocks,
    choose_duel_winner,
    choose_pool_winner,
)

from tests.conftest import ALICE, BOB, CAROL, meta

LEDGER_TIME = 1_700_000_000  # seconds


def _created(round_id=7, who=ALICE, stake=100, tx="0x01"):
    return ev.ChallengeCreated(round=round_id, creator=who, stake=stake, meta=meta(tx))


def _entered(round_id=7, who=BOB, stake=100, tx="0x02"):
    return ev.EnteredChallenge(round=round_id, account=who, stake=stake, meta=meta(tx))


def _duel_winner(round_id=7, winner=BOB, reward=190, stake=100, tx="0x03"):
    return ev.DuelWinnerDrawn(
        round=round_id, participant_a=ALICE, participant_b=BOB, stake=stake,
        result_flag=True, winner=winner, time=LEDGER_TIME, reward=reward, meta=meta(tx),
    )


def _bet_rows(mock_broadcaster: MagicMock) -> list[dict]:
    return [c.args[0] for c in mock_broadcaster.bet_placed.call_args_list]


class TestRoundLocks:
    async def test_entries_released_when_idle(self):
        locks = RoundLocks()
        async with locks.hold("duel:1"):
            assert len(locks) == 1
        assert len(locks) == 0

    async def test_same_key_serializes_fifo(self):
        locks = RoundLocks()
        order: list[int] = []

        async def worker(i: int):
            async with locks.hold("duel:1"):
                await asyncio.sleep(0.01 if i == 0 else 0)
                order.append(i)

        await asyncio.gather(*(worker(i) for i in range(4)))
        assert order == [0, 1, 2, 3]
        assert len(locks) == 0

    async def test_different_keys_run_concurrently(self):
        locks = RoundLocks()
        inside = asyncio.Event()

        async def holder():
            async with locks.hold("duel:1"):
                await asyncio.wait_for(inside.wait(), 1)

        async def other():
            async with locks.hold("duel:2"):
                inside.set()

        await asyncio.gather(holder(), other())


class TestWinnerPolicies:
    def _bet(self, id, address, stake="10", created_at=0):
        return {"id": id, "address": address, "stake": stake, "created_at": created_at}

    def test_duel_address_match(self):
        bets = [self._bet(1, ALICE), self._bet(2, BOB)]
        assert choose_duel_winner(bets, BOB)["id"] == 2
        assert choose_duel_winner(bets, CAROL) is None

    def test_pool_most_recent_entry_of_winner(self):
        bets = [self._bet(1, BOB, created_at=5), self._bet(2, ALICE, created_at=9), self._bet(3, BOB, created_at=7)]
        assert choose_pool_winner(bets, BOB)["id"] == 3

    def test_pool_stake_and_closest_time(self):
        bets = [
            self._bet(1, BOB, stake="10", created_at=100),
            self._bet(2, BOB, stake="20", created_at=150),
            self._bet(3, BOB, stake="10", created_at=900),
        ]
        assert choose_pool_winner(bets, BOB, stake="10", time_ms=200)["id"] == 1

    def test_pool_stake_mismatch_falls_back(self):
        bets = [self._bet(1, BOB, stake="10", created_at=100), self._bet(2, BOB, stake="20", created_at=150)]
        assert choose_pool_winner(bets, BOB, stake="99", time_ms=100)["id"] == 2


class TestDuelEntries:
    """Idempotent duel entry recording."""

    async def test_creator_and_challenger_recorded(
        self, engine: ReconciliationEngine, database: IndexerDatabase, mock_broadcaster: MagicMock,
    ):
        await engine.apply(_created())
        await engine.apply(_entered())
        bets = await database.get_round_bets("duel", "7")
        assert [(b["address"], b["role"], b["stake"]) for b in bets] == [
            (ALICE, "creator", "100"), (BOB, "challenger", "100"),
        ]
        assert mock_broadcaster.bet_placed.call_count == 2
        assert all(row["outcome"] == "pending" for row in _bet_rows(mock_broadcaster))

    async def test_duplicate_entry_is_noop(
        self, engine: ReconciliationEngine, database: IndexerDatabase, mock_broadcaster: MagicMock,
    ):
        await engine.apply(_created())
        await engine.apply(_created())
        assert len(await database.get_round_bets("duel", "7")) == 1
        assert mock_broadcaster.bet_placed.call_count == 1
        assert engine.duplicate_entries == 1

    async def test_new_account_announced(
        self, engine: ReconciliationEngine, database: IndexerDatabase, mock_broadcaster: MagicMock,
    ):
        await engine.apply(_created())
        await engine.apply(_created(round_id=8, tx="0x09"))
        assert mock_broadcaster.users_updated.call_count == 1
        assert (await database.get_account(ALICE))["display_name"] == ALICE

    async def test_big_stake_stored_exactly(self, engine: ReconciliationEngine, database: IndexerDatabase):
        await engine.apply(_created(stake=2**255))
        bet = (await database.get_round_bets("duel", "7"))[0]
        assert bet["stake"] == str(2**255)

    async def test_entry_schedules_analytics(self, engine: ReconciliationEngine, mock_analytics: MagicMock):
        await engine.apply(_created())
        mock_analytics.schedule_recompute.assert_called_once()


class TestDuelSettlement:
    """Create, enter, draw."""

    async def test_full_round(
        self,
        engine: ReconciliationEngine,
        database: IndexerDatabase,
        mock_broadcaster: MagicMock,
        mock_analytics: MagicMock,
    ):
        await engine.apply(_created())
        await engine.apply(_entered())
        mock_broadcaster.reset_mock()

        await engine.apply(_duel_winner())

        bets = {b["address"]: b for b in await database.get_round_bets("duel", "7")}
        assert (bets[ALICE]["outcome"], bets[ALICE]["payout"]) == ("loss", "0")
        assert (bets[BOB]["outcome"], bets[BOB]["payout"]) == ("win", "190")

        history = await database.get_recent_history()
        assert len(history) == 1
        assert history[0]["address"] == BOB
        assert history[0]["reward"] == "190"
        assert history[0]["stake"] == "100"
        assert history[0]["event_time"] == LEDGER_TIME * 1000

        entry = await database.get_leaderboard_entry(BOB, "duel")
        assert (entry["wins"], entry["total_xp"], entry["total_reward"]) == (1, 100.0, 190.0)

        mock_broadcaster.leaderboard_updated.assert_called_once()
        mock_broadcaster.history_appended.assert_called_once()
        assert mock_broadcaster.history_appended.call_args.args[0]["roundId"] == "7"
        mock_analytics.notify_new_history_row.assert_called_once()

        rows = {row["outcome"]: row for row in _bet_rows(mock_broadcaster)}
        assert set(rows) == {"win", "loss"}
        assert rows["win"] == {
            "username": BOB,
            "gameKind": "duel",
            "amount": 100.0,
            "outcome": "win",
            "payout": 190.0,
            "multiplier": 1.9,
            "timestampMs": LEDGER_TIME * 1000,
        }
        assert "payout" not in rows["loss"]
        assert "multiplier" not in rows["loss"]

    async def test_exactly_one_win_one_loss(self, engine: ReconciliationEngine, database: IndexerDatabase):
        await engine.apply(_created())
        await engine.apply(_entered())
        await engine.apply(_duel_winner(winner=ALICE))
        outcomes = sorted(b["outcome"] for b in await database.get_round_bets("duel", "7"))
        assert outcomes == ["loss", "win"]

    async def test_duplicate_winner_is_noop(
        self,
        engine: ReconciliationEngine,
        database: IndexerDatabase,
        mock_broadcaster: MagicMock,
        mock_analytics: MagicMock,
    ):
        await engine.apply(_created())
        await engine.apply(_entered())
        await engine.apply(_duel_winner())
        mock_broadcaster.reset_mock()
        mock_analytics.reset_mock()

        await engine.apply(_duel_winner())

        assert len(await database.get_recent_history()) == 1
        assert (await database.get_leaderboard_entry(BOB, "duel"))["wins"] == 1
        mock_broadcaster.leaderboard_updated.assert_not_called()
        mock_broadcaster.bet_placed.assert_not_called()
        mock_analytics.notify_new_history_row.assert_not_called()
        assert engine.duplicate_settlements == 1

    async def test_missing_round_still_records_win(
        self,
        engine: ReconciliationEngine,
        database: IndexerDatabase,
        mock_broadcaster: MagicMock,
        caplog,
    ):
        with caplog.at_level(logging.WARNING):
            await engine.apply(_duel_winner(round_id=42, winner=CAROL))
        assert "No bets known" in caplog.text
        history = await database.get_recent_history()
        assert history[0]["address"] == CAROL
        assert (await database.get_leaderboard_entry(CAROL, "duel"))["wins"] == 1
        row = _bet_rows(mock_broadcaster)[0]
        assert row["outcome"] == "win"
        assert row["payout"] == 190.0

    async def test_concurrent_events_for_one_round_keep_order(
        self, engine: ReconciliationEngine, database: IndexerDatabase,
    ):
        await asyncio.gather(
            engine.apply(_created()),
            engine.apply(_entered()),
            engine.apply(_duel_winner()),
        )
        bets = await database.get_round_bets("duel", "7")
        assert len(bets) == 2
        assert sorted(b["outcome"] for b in bets) == ["loss", "win"]
        assert len(engine.locks) == 0

    async def test_leaderboard_monotonic(self, engine: ReconciliationEngine, database: IndexerDatabase):
        previous = (0, 0.0, 0.0)
        for round_id in range(1, 6):
            await engine.apply(_created(round_id=round_id, tx=f"0xa{round_id}"))
            await engine.apply(_entered(round_id=round_id, tx=f"0xb{round_id}"))
            await engine.apply(_duel_winner(round_id=round_id, tx=f"0xc{round_id}"))
            await engine.apply(_duel_winner(round_id=round_id, tx=f"0xd{round_id}"))
            entry = await database.get_leaderboard_entry(BOB, "duel")
            current = (entry["wins"], entry["total_xp"], entry["total_reward"])
            assert all(c >= p for c, p in zip(current, previous))
            previous = current
        assert previous == (5, 500.0, 950.0)


class TestPoolRounds:
    async def test_entries_and_settlement(
        self, engine: ReconciliationEngine, database: IndexerDatabase, mock_broadcaster: MagicMock,
    ):
        await engine.apply(ev.EnteredPool(pool=3, account=ALICE, stake=10, meta=meta("0x1", 1000)))
        await engine.apply(ev.EnteredPool(pool=3, account=BOB, stake=10, meta=meta("0x2", 2000)))
        await engine.apply(ev.EnteredPool(pool=3, account=BOB, stake=10, meta=meta("0x2", 2000)))
        assert len(await database.get_round_bets("pool", "3")) == 3

        await engine.apply(ev.PoolWinnerDrawn(pool=3, winner=BOB, reward=25, pool_variant=True, meta=meta("0x3")))

        bets = await database.get_round_bets("pool", "3")
        wins = [b for b in bets if b["outcome"] == "win"]
        assert len(wins) == 1
        assert wins[0]["address"] == BOB
        assert wins[0]["payout"] == "25"
        assert all(b["payout"] == "0" for b in bets if b["outcome"] == "loss")

        history = (await database.get_recent_history())[0]
        assert history["stake"] == "10"
        assert history["pool_variant"] == 1
        entry = await database.get_leaderboard_entry(BOB, "pool", pool_variant=True)
        assert entry["total_xp"] == 10.0

    async def test_winner_without_entry(self, engine: ReconciliationEngine, database: IndexerDatabase):
        await engine.apply(ev.EnteredPool(pool=5, account=ALICE, stake=10, meta=meta("0x1")))
        result = await engine.settle("5", CAROL, "30", None, 0, GameKind.POOL)
        assert result.winning_bet is None
        assert result.history["stake"] == "0"
        bets = await database.get_round_bets("pool", "5")
        assert [b["outcome"] for b in bets] == ["loss"]


class TestLateEntries:
    """Entries delivered after their round was drawn."""

    async def test_duel_entry_after_winner_is_loss(
        self, engine: ReconciliationEngine, database: IndexerDatabase, mock_broadcaster: MagicMock,
    ):
        await engine.apply(_created(who=ALICE))
        await engine.apply(_duel_winner(winner=ALICE))
        await engine.apply(_entered(who=BOB))

        bets = {b["address"]: (b["outcome"], b["payout"]) for b in await database.get_round_bets("duel", "7")}
        assert bets == {ALICE: ("win", "190"), BOB: ("loss", "0")}
        assert _bet_rows(mock_broadcaster)[-1]["outcome"] == "loss"
        assert engine.late_entries == 1

    async def test_duel_entries_after_winner_resolve_both(
        self, engine: ReconciliationEngine, database: IndexerDatabase, mock_broadcaster: MagicMock,
    ):
        await engine.apply(_duel_winner(winner=BOB))
        await engine.apply(_created(who=ALICE))
        await engine.apply(_entered(who=BOB))

        bets = {b["address"]: (b["outcome"], b["payout"]) for b in await database.get_round_bets("duel", "7")}
        assert bets == {ALICE: ("loss", "0"), BOB: ("win", "190")}
        late_row = _bet_rows(mock_broadcaster)[-1]
        assert late_row["outcome"] == "win"
        assert late_row["payout"] == 190.0
        entry = await database.get_leaderboard_entry(BOB, "duel")
        assert entry["wins"] == 1

    async def test_pool_entries_after_draw(self, engine: ReconciliationEngine, database: IndexerDatabase):
        await engine.apply(ev.PoolWinnerDrawn(pool=4, winner=BOB, reward=25, pool_variant=None, meta=meta("0x1")))
        await engine.apply(ev.EnteredPool(pool=4, account=ALICE, stake=10, meta=meta("0x2")))
        await engine.apply(ev.EnteredPool(pool=4, account=BOB, stake=10, meta=meta("0x3")))
        await engine.apply(ev.EnteredPool(pool=4, account=BOB, stake=10, meta=meta("0x4")))

        bets = await database.get_round_bets("pool", "4")
        assert [(b["address"], b["outcome"], b["payout"]) for b in bets] == [
            (ALICE, "loss", "0"), (BOB, "win", "25"), (BOB, "loss", "0"),
        ]
        assert "pending" not in {b["outcome"] for b in bets}
        assert engine.late_entries == 3


class TestLedgerTime:
    """Block timestamps replace the receive time where events carry none."""

    @pytest.fixture
    def fetched(self) -> list[int]:
        return []

    @pytest.fixture
    def clocked_engine(
        self, database: IndexerDatabase, mock_broadcaster: MagicMock, mock_analytics: MagicMock, fetched: list[int],
    ) -> ReconciliationEngine:
        def fetch_block(number: int) -> dict:
            fetched.append(number)
            return {"timestamp": LEDGER_TIME + number}

        return ReconciliationEngine(
            database, mock_broadcaster, mock_analytics, logging.getLogger("test"),
            block_clock=BlockClock(fetch_block, logging.getLogger("test")),
        )

    async def test_entry_created_at_is_block_time(
        self, clocked_engine: ReconciliationEngine, database: IndexerDatabase, fetched: list[int],
    ):
        await clocked_engine.apply(ev.EnteredPool(pool=1, account=ALICE, stake=10, meta=meta("0x1", 5, block_number=40)))
        await clocked_engine.apply(ev.EnteredPool(pool=1, account=BOB, stake=10, meta=meta("0x2", 6, block_number=40)))
        bets = await database.get_round_bets("pool", "1")
        assert [b["created_at"] for b in bets] == [(LEDGER_TIME + 40) * 1000] * 2
        assert fetched == [40]

    async def test_pool_draw_and_claim_use_block_time(
        self, clocked_engine: ReconciliationEngine, database: IndexerDatabase, mock_broadcaster: MagicMock,
    ):
        await clocked_engine.apply(ev.PoolWinnerDrawn(
            pool=2, winner=BOB, reward=25, pool_variant=False, meta=meta("0x1", 5, block_number=60),
        ))
        history = (await database.get_recent_history())[0]
        assert history["event_time"] == (LEDGER_TIME + 60) * 1000

        await clocked_engine.apply(ev.PayoutClaimed(pool=2, winner=BOB, amount=25, meta=meta("0x2", 5, block_number=61)))
        payload = mock_broadcaster.history_appended.call_args.args[0]
        assert payload["data"]["timestampMs"] == (LEDGER_TIME + 61) * 1000

    async def test_duel_winner_keeps_event_time(
        self, clocked_engine: ReconciliationEngine, database: IndexerDatabase, fetched: list[int],
    ):
        await clocked_engine.apply(_duel_winner())
        history = (await database.get_recent_history())[0]
        assert history["event_time"] == LEDGER_TIME * 1000
        assert fetched == []

    async def test_without_block_number_uses_receive_time(
        self, clocked_engine: ReconciliationEngine, database: IndexerDatabase, fetched: list[int],
    ):
        await clocked_engine.apply(ev.EnteredPool(pool=3, account=ALICE, stake=10, meta=meta("0x1", 1234)))
        bets = await database.get_round_bets("pool", "3")
        assert bets[0]["created_at"] == 1234
        assert fetched == []


class TestInformationalEvents:
    async def test_payout_claimed(
        self, engine: ReconciliationEngine, database: IndexerDatabase, mock_broadcaster: MagicMock,
    ):
        await engine.apply(ev.PayoutClaimed(pool=3, winner=BOB, amount=10**18, meta=meta("0x9")))
        payload = mock_broadcaster.history_appended.call_args.args[0]
        assert payload["type"] == "payout_claimed"
        assert payload["data"]["amount"] == str(10**18)
        assert await database.get_recent_history() == []

    async def test_pool_created(self, engine: ReconciliationEngine, mock_broadcaster: MagicMock):
        await engine.apply(ev.PoolCreated(
            pool=1, base_token=ALICE, limit=100, ticket_price=5, pool_variant=False, meta=meta(),
        ))
        payload = mock_broadcaster.history_appended.call_args.args[0]
        assert payload["type"] == "pool_created"
        assert payload["data"]["ticketPrice"] == "5"


class TestErrorIsolation:
    async def test_apply_swallows_store_errors(
        self, engine: ReconciliationEngine, database: IndexerDatabase, monkeypatch, caplog,
    ):
        monkeypatch.setattr(database, "ensure_account", AsyncMock(side_effect=RuntimeError("disk gone")))
        with caplog.at_level(logging.ERROR):
            await engine.apply(_created())
        assert engine.events_failed == 1
        assert "Failed to apply ChallengeCreated" in caplog.text
        assert len(engine.locks) == 0

    async def test_unknown_event_type(self, engine: ReconciliationEngine):
        await engine.apply(object())
        assert engine.events_applied == 0
