"""SQLite database module for wave-indexer.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory).

Amounts are stored as base-10 decimal strings (lossless); leaderboard
aggregates are REAL and only ever incremented with finite values.
"""

from __future__ import annotations

import asyncio
import logging
import math
import sqlite3
from dataclasses import dataclass, field
from typing import Callable

from .numeric import to_safe_number
from .utils import now_ms

# Leaderboard rows for game kinds without a pool variant use this sentinel so
# the (address, game_kind, pool_variant) unique key never contains NULL.
NO_VARIANT = -1


def variant_to_db(pool_variant: bool | None) -> int:
    if pool_variant is None:
        return NO_VARIANT
    return 1 if pool_variant else 0


def variant_from_db(value: int | None) -> bool | None:
    if value is None or value == NO_VARIANT:
        return None
    return bool(value)


@dataclass
class SettlementResult:
    """Outcome of one settle_round() transaction."""

    already_settled: bool = False
    bets: list[dict] = field(default_factory=list)
    winning_bet: dict | None = None
    history: dict | None = None
    xp_increment: float = 0.0
    reward_increment: float = 0.0


class IndexerDatabase:
    """SQLite-backed persistence for accounts, bets, win history and leaderboard."""

    def __init__(self, db_path: str, logger: logging.Logger) -> None:
        self._db_path = db_path
        self._logger = logger

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, fn: Callable):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        await self._run(self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    address TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    banned BOOLEAN DEFAULT 0,
                    avatar TEXT,
                    last_active INTEGER,
                    created_at INTEGER NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS bets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    address TEXT NOT NULL,
                    round_id TEXT NOT NULL,
                    game_kind TEXT NOT NULL,
                    role TEXT NOT NULL,
                    stake TEXT NOT NULL DEFAULT '0',
                    outcome TEXT NOT NULL DEFAULT 'pending',
                    payout TEXT NOT NULL DEFAULT '0',
                    pool_variant INTEGER,
                    tx_hash TEXT,
                    created_at INTEGER NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS win_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    address TEXT NOT NULL,
                    game_kind TEXT NOT NULL,
                    pool_variant INTEGER,
                    reward TEXT NOT NULL DEFAULT '0',
                    stake TEXT NOT NULL DEFAULT '0',
                    event_time INTEGER NOT NULL,
                    round_id TEXT NOT NULL,
                    tx_hash TEXT,
                    UNIQUE(game_kind, round_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS leaderboard (
                    address TEXT NOT NULL,
                    game_kind TEXT NOT NULL,
                    pool_variant INTEGER NOT NULL DEFAULT -1,
                    wins INTEGER DEFAULT 0,
                    total_xp REAL DEFAULT 0,
                    total_reward REAL DEFAULT 0,
                    updated_at INTEGER,
                    UNIQUE(address, game_kind, pool_variant)
                )
            """)

            # One creator and one challenger per duel round
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_bets_duel_round_role "
                "ON bets(round_id, role) WHERE game_kind = 'duel'"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_bets_round ON bets(game_kind, round_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_bets_address ON bets(address, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_win_history_time ON win_history(event_time)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_leaderboard_rank "
                "ON leaderboard(game_kind, pool_variant, total_xp DESC, wins DESC)"
            )
            conn.commit()
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Account Operations
    # ══════════════════════════════════════════════════════════

    async def ensure_account(self, address: str) -> bool:
        """Create the account if absent and refresh last_active.
        Returns True when the account was created by this call."""

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                ts = now_ms()
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO accounts (address, display_name, created_at, last_active) "
                    "VALUES (?, ?, ?, ?)",
                    (address, address, ts, ts),
                )
                created = cursor.rowcount > 0
                if not created:
                    conn.execute(
                        "UPDATE accounts SET last_active = ? WHERE address = ?", (ts, address),
                    )
                conn.commit()
                return created
            finally:
                conn.close()

        return await self._run(_sync)

    async def upsert_account(
        self,
        address: str,
        display_name: str | None = None,
        avatar: str | None = None,
    ) -> dict:
        """Administrative upsert. Only the given fields are overwritten."""

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT OR IGNORE INTO accounts (address, display_name, created_at) VALUES (?, ?, ?)",
                    (address, display_name or address, now_ms()),
                )
                if display_name is not None:
                    conn.execute(
                        "UPDATE accounts SET display_name = ? WHERE address = ?", (display_name, address),
                    )
                if avatar is not None:
                    conn.execute("UPDATE accounts SET avatar = ? WHERE address = ?", (avatar, address))
                conn.commit()
                row = conn.execute("SELECT * FROM accounts WHERE address = ?", (address,)).fetchone()
                return dict(row)
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_account(self, address: str) -> dict | None:
        """Return account row as dict, or None if not exists."""

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT * FROM accounts WHERE address = ?", (address,)).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_display_name(self, address: str) -> str:
        """Display name for broadcasts; falls back to the address."""
        account = await self.get_account(address)
        return (account or {}).get("display_name") or address

    async def set_banned(self, address: str, banned: bool) -> None:
        """Set or clear the ban flag, creating the account if needed."""

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT OR IGNORE INTO accounts (address, display_name, created_at) VALUES (?, ?, ?)",
                    (address, address, now_ms()),
                )
                conn.execute(
                    "UPDATE accounts SET banned = ? WHERE address = ?", (1 if banned else 0, address),
                )
                conn.commit()
            finally:
                conn.close()

        await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Bets
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _settled_outcome(conn: sqlite3.Connection, game_kind: str, round_id: str, address: str) -> tuple[str, str]:
        """Outcome and payout for a bet recorded in *round_id* right now.

        An open round gives ``pending``. Once the round has a win history row
        the winner's first bet takes ``win`` with the recorded reward and any
        other bet is a ``loss``.
        """
        history = conn.execute(
            "SELECT address, reward FROM win_history WHERE game_kind = ? AND round_id = ?",
            (game_kind, round_id),
        ).fetchone()
        if history is None:
            return "pending", "0"
        if history["address"] == address:
            has_win = conn.execute(
                "SELECT 1 FROM bets WHERE game_kind = ? AND round_id = ? AND outcome = 'win' LIMIT 1",
                (game_kind, round_id),
            ).fetchone()
            if not has_win:
                return "win", history["reward"]
        return "loss", "0"

    async def insert_duel_bet(
        self,
        address: str,
        round_id: str,
        role: str,
        stake: str,
        tx_hash: str | None = None,
        created_at: int | None = None,
    ) -> dict | None:
        """Insert a duel bet unless (round_id, role) already exists.
        The bet is pending, or already resolved when the round has settled.
        Returns the new row, or None for an idempotent no-op."""

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                outcome, payout = self._settled_outcome(conn, "duel", round_id, address)
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO bets "
                    "(address, round_id, game_kind, role, stake, outcome, payout, tx_hash, created_at) "
                    "VALUES (?, ?, 'duel', ?, ?, ?, ?, ?, ?)",
                    (address, round_id, role, stake, outcome, payout, tx_hash, created_at or now_ms()),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return None
                conn.commit()
                row = conn.execute("SELECT * FROM bets WHERE id = ?", (cursor.lastrowid,)).fetchone()
                return dict(row)
            finally:
                conn.close()

        return await self._run(_sync)

    async def insert_pool_bet(
        self,
        address: str,
        round_id: str,
        stake: str,
        pool_variant: bool | None = None,
        tx_hash: str | None = None,
        created_at: int | None = None,
    ) -> dict:
        """Insert a pool entry. Every call creates a new row; it is pending
        unless the pool has already been drawn."""

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                variant = None if pool_variant is None else int(pool_variant)
                outcome, payout = self._settled_outcome(conn, "pool", round_id, address)
                cursor = conn.execute(
                    "INSERT INTO bets "
                    "(address, round_id, game_kind, role, stake, outcome, payout, pool_variant, tx_hash, created_at) "
                    "VALUES (?, ?, 'pool', 'entrant', ?, ?, ?, ?, ?, ?)",
                    (address, round_id, stake, outcome, payout, variant, tx_hash, created_at or now_ms()),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM bets WHERE id = ?", (cursor.lastrowid,)).fetchone()
                return dict(row)
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_round_bets(self, game_kind: str, round_id: str) -> list[dict]:
        """All bets of one round, oldest first."""

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM bets WHERE game_kind = ? AND round_id = ? ORDER BY created_at, id",
                    (game_kind, round_id),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_bets(
        self,
        account: str | None = None,
        round_id: str | None = None,
        game_kind: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict:
        """Paged bet listing, newest first.
        Returns {items, total, page, pages}."""

        def _sync() -> dict:
            clauses: list[str] = []
            params: list = []
            for column, value in (("address", account), ("round_id", round_id), ("game_kind", game_kind)):
                if value is not None:
                    clauses.append(f"{column} = ?")
                    params.append(value)
            where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
            page_num = max(page, 1)
            conn = self._get_connection()
            try:
                total = conn.execute(f"SELECT COUNT(*) AS c FROM bets {where}", params).fetchone()["c"]
                rows = conn.execute(
                    f"SELECT * FROM bets {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                    [*params, limit, (page_num - 1) * limit],
                ).fetchall()
                return {
                    "items": [dict(r) for r in rows],
                    "total": total,
                    "page": page_num,
                    "pages": math.ceil(total / limit) if limit else 0,
                }
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Settlement
    # ══════════════════════════════════════════════════════════

    async def settle_round(
        self,
        game_kind: str,
        round_id: str,
        winner: str,
        reward: str,
        stake: str | None,
        event_time: int,
        choose_winner: Callable[[list[dict]], dict | None],
        pool_variant: bool | None = None,
        tx_hash: str | None = None,
    ) -> SettlementResult:
        """Resolve a round in one IMMEDIATE transaction.

        Every bet of the round becomes ``loss`` with payout ``"0"`` and the
        bet picked by *choose_winner* becomes ``win`` with *reward* as payout.
        The winner's history row is appended and the leaderboard incremented.
        A round that already has a win (or a history row) is left untouched.
        When *stake* is None the winning bet's stake is used.
        """

        def _sync() -> SettlementResult:
            conn = self._get_connection()
            conn.isolation_level = None
            try:
                conn.execute("BEGIN IMMEDIATE")
                settled = conn.execute(
                    "SELECT 1 FROM win_history WHERE game_kind = ? AND round_id = ? "
                    "UNION ALL SELECT 1 FROM bets WHERE game_kind = ? AND round_id = ? AND outcome = 'win' "
                    "LIMIT 1",
                    (game_kind, round_id, game_kind, round_id),
                ).fetchone()
                bets = [
                    dict(r) for r in conn.execute(
                        "SELECT * FROM bets WHERE game_kind = ? AND round_id = ? ORDER BY created_at, id",
                        (game_kind, round_id),
                    ).fetchall()
                ]
                if settled:
                    conn.execute("ROLLBACK")
                    return SettlementResult(already_settled=True, bets=bets)

                winning = choose_winner(bets) if bets else None
                conn.execute(
                    "UPDATE bets SET outcome = 'loss', payout = '0' WHERE game_kind = ? AND round_id = ?",
                    (game_kind, round_id),
                )
                if winning is not None:
                    conn.execute(
                        "UPDATE bets SET outcome = 'win', payout = ? WHERE id = ?",
                        (reward, winning["id"]),
                    )

                resolved_stake = stake if stake is not None else (winning["stake"] if winning else "0")
                variant = variant_to_db(pool_variant)
                conn.execute(
                    "INSERT INTO win_history (address, game_kind, pool_variant, reward, stake, event_time, "
                    "round_id, tx_hash) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (winner, game_kind, None if pool_variant is None else int(pool_variant), reward, resolved_stake,
                     event_time, round_id, tx_hash),
                )

                xp_inc = to_safe_number(resolved_stake)
                reward_inc = to_safe_number(reward)
                conn.execute(
                    "INSERT INTO leaderboard (address, game_kind, pool_variant, wins, total_xp, total_reward, "
                    "updated_at) VALUES (?, ?, ?, 1, ?, ?, ?) "
                    "ON CONFLICT(address, game_kind, pool_variant) DO UPDATE SET "
                    "wins = wins + 1, total_xp = total_xp + excluded.total_xp, "
                    "total_reward = total_reward + excluded.total_reward, updated_at = excluded.updated_at",
                    (winner, game_kind, variant, xp_inc, reward_inc, now_ms()),
                )
                conn.execute("COMMIT")

                after = [
                    dict(r) for r in conn.execute(
                        "SELECT * FROM bets WHERE game_kind = ? AND round_id = ? ORDER BY created_at, id",
                        (game_kind, round_id),
                    ).fetchall()
                ]
                history = conn.execute(
                    "SELECT * FROM win_history WHERE game_kind = ? AND round_id = ?",
                    (game_kind, round_id),
                ).fetchone()
                winning_after = next((b for b in after if winning and b["id"] == winning["id"]), None)
                return SettlementResult(
                    bets=after,
                    winning_bet=winning_after,
                    history=dict(history) if history else None,
                    xp_increment=xp_inc,
                    reward_increment=reward_inc,
                )
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Leaderboard
    # ══════════════════════════════════════════════════════════

    async def get_leaderboard_entry(
        self, address: str, game_kind: str, pool_variant: bool | None = None,
    ) -> dict | None:
        """Return one raw leaderboard row, or None."""

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM leaderboard WHERE address = ? AND game_kind = ? AND pool_variant = ?",
                    (address, game_kind, variant_to_db(pool_variant)),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_top_leaderboard(self, limit: int = 50) -> list[dict]:
        """Top accounts by wins, aggregated across game kinds."""

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT address, SUM(wins) AS wins, SUM(total_xp) AS total_xp, "
                    "SUM(total_reward) AS total_reward FROM leaderboard "
                    "GROUP BY address ORDER BY wins DESC, total_xp DESC LIMIT ?",
                    (limit,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_leaderboard(
        self,
        game_kind: str,
        pool_variant: bool | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> list[dict]:
        """Ranked leaderboard page for one game kind (by total_xp, then wins)."""

        def _sync() -> list[dict]:
            params: list = [game_kind]
            variant_clause = ""
            if pool_variant is not None:
                variant_clause = "AND l.pool_variant = ?"
                params.append(variant_to_db(pool_variant))
            offset = (max(page, 1) - 1) * limit
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT l.address, l.game_kind, l.pool_variant, l.wins, l.total_xp, l.total_reward, "
                    "COALESCE(a.display_name, l.address) AS display_name, COALESCE(a.avatar, '') AS avatar "
                    "FROM leaderboard l LEFT JOIN accounts a ON a.address = l.address "
                    f"WHERE l.game_kind = ? {variant_clause} "
                    "ORDER BY l.total_xp DESC, l.wins DESC LIMIT ? OFFSET ?",
                    [*params, limit, offset],
                ).fetchall()
                result = []
                for i, row in enumerate(rows):
                    entry = dict(row)
                    entry["pool_variant"] = variant_from_db(entry["pool_variant"])
                    entry["rank"] = offset + i + 1
                    result.append(entry)
                return result
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_account_rank(
        self, address: str, game_kind: str, pool_variant: bool | None = None,
    ) -> dict | None:
        """One account's leaderboard row with its 1-based rank, or None."""

        def _sync() -> dict | None:
            variant = variant_to_db(pool_variant)
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM leaderboard WHERE address = ? AND game_kind = ? AND pool_variant = ?",
                    (address, game_kind, variant),
                ).fetchone()
                if not row:
                    return None
                ahead = conn.execute(
                    "SELECT COUNT(*) AS c FROM leaderboard WHERE game_kind = ? AND pool_variant = ? "
                    "AND (total_xp > ? OR (total_xp = ? AND wins > ?))",
                    (game_kind, variant, row["total_xp"], row["total_xp"], row["wins"]),
                ).fetchone()["c"]
                entry = dict(row)
                entry["pool_variant"] = variant_from_db(entry["pool_variant"])
                entry["rank"] = ahead + 1
                return entry
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Win History
    # ══════════════════════════════════════════════════════════

    async def get_recent_history(self, limit: int = 20) -> list[dict]:
        """Most recent wins, newest first."""

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM win_history ORDER BY event_time DESC, id DESC LIMIT ?", (limit,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    async def count_bets_by_day(self, since_ms: int) -> dict[str, int]:
        """{YYYY-MM-DD (UTC): bets created that day} from *since_ms* on."""

        def _sync() -> dict[str, int]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT strftime('%Y-%m-%d', created_at / 1000, 'unixepoch') AS day, COUNT(*) AS c "
                    "FROM bets WHERE created_at >= ? GROUP BY day",
                    (since_ms,),
                ).fetchall()
                return {r["day"]: r["c"] for r in rows}
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_history_since(self, since_ms: int) -> list[dict]:
        """Win history rows at or after *since_ms*, oldest first."""

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT address, game_kind, reward, stake, event_time FROM win_history "
                    "WHERE event_time >= ? ORDER BY event_time",
                    (since_ms,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)
