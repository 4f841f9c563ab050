"""Analytics cache: time-windowed aggregates over win history.

Snapshots are immutable and replaced wholesale. ``get()`` serves a cached
snapshot while it is fresh; ``notify_new_history_row()`` debounces a
recompute-and-broadcast so a burst of wins costs one recompute.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from .numeric import to_safe_number
from .utils import day_key, month_key, now_ms

if TYPE_CHECKING:
    from .broadcaster import Broadcaster
    from .database import IndexerDatabase

GAME_KIND_LABELS = {"duel": "Coin Flip", "pool": "Prize Pool"}
GROWTH_MONTHS = 6
DAY_MS = 86_400_000


@dataclass(frozen=True)
class DailyStat:
    date: str
    bets: int
    wins: int
    volume: float


@dataclass(frozen=True)
class GameKindShare:
    kind: str
    name: str
    count: int


@dataclass(frozen=True)
class GrowthPoint:
    month: str
    users: int


@dataclass(frozen=True)
class AnalyticsSnapshot:
    daily_stats: tuple[DailyStat, ...]
    game_kinds: tuple[GameKindShare, ...]
    user_growth: tuple[GrowthPoint, ...]
    bets_today: int
    wins_today: int
    win_rate: float
    computed_at: int
    window_days: int

    def to_payload(self) -> dict:
        """Subscriber-facing JSON shape."""
        return {
            "dailyStats": [
                {"date": d.date, "bets": d.bets, "wins": d.wins, "volume": d.volume}
                for d in self.daily_stats
            ],
            "gameKinds": [
                {"kind": g.kind, "name": g.name, "value": g.count, "count": g.count}
                for g in self.game_kinds
            ],
            "userGrowth": [{"month": g.month, "users": g.users} for g in self.user_growth],
            "live": {
                "betsToday": self.bets_today,
                "winsToday": self.wins_today,
                "winRate": self.win_rate,
            },
            "computedAt": self.computed_at,
            "windowDays": self.window_days,
        }


def _month_starts(now: datetime, months: int) -> list[datetime]:
    """First instant of each of the trailing *months* months, oldest first."""
    starts = []
    year, month = now.year, now.month
    for _ in range(months):
        starts.append(datetime(year, month, 1, tzinfo=timezone.utc))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(starts))


def growth_since_ms(now: datetime) -> int:
    return int(_month_starts(now, GROWTH_MONTHS)[0].timestamp() * 1000)


def compute_snapshot(
    history: list[dict],
    bets_by_day: dict[str, int],
    window_days: int,
    now: datetime | None = None,
) -> AnalyticsSnapshot:
    """Build a snapshot from win-history rows (may span more than the window)."""
    now = now or datetime.now(timezone.utc)
    current_ms = int(now.timestamp() * 1000)
    window_start = current_ms - window_days * DAY_MS
    today = day_key(current_ms)

    wins_by_day: dict[str, int] = {}
    volume_by_day: dict[str, float] = {}
    kinds: dict[str, int] = {}
    for row in history:
        ts = row["event_time"]
        if ts < window_start:
            continue
        day = day_key(ts)
        wins_by_day[day] = wins_by_day.get(day, 0) + 1
        volume_by_day[day] = volume_by_day.get(day, 0.0) + to_safe_number(row["stake"])
        kinds[row["game_kind"]] = kinds.get(row["game_kind"], 0) + 1

    daily = []
    for i in range(window_days - 1, -1, -1):
        day = day_key(current_ms - i * DAY_MS)
        daily.append(DailyStat(
            date=day,
            bets=bets_by_day.get(day, 0),
            wins=wins_by_day.get(day, 0),
            volume=volume_by_day.get(day, 0.0),
        ))

    game_kinds = sorted(
        (GameKindShare(kind=k, name=GAME_KIND_LABELS.get(k, k), count=c) for k, c in kinds.items()),
        key=lambda g: g.count,
        reverse=True,
    )

    # Distinct winning accounts per month
    winners_by_month: dict[str, set[str]] = {}
    for row in history:
        winners_by_month.setdefault(month_key(row["event_time"]), set()).add(row["address"])
    growth = [
        GrowthPoint(
            month=start.strftime("%b"),
            users=len(winners_by_month.get(start.strftime("%Y-%m"), ())),
        )
        for start in _month_starts(now, GROWTH_MONTHS)
    ]

    bets_today = bets_by_day.get(today, 0)
    wins_today = sum(1 for row in history if day_key(row["event_time"]) == today)
    win_rate = round(wins_today / bets_today * 100, 1) if bets_today else 0.0

    return AnalyticsSnapshot(
        daily_stats=tuple(daily),
        game_kinds=tuple(game_kinds),
        user_growth=tuple(growth),
        bets_today=bets_today,
        wins_today=wins_today,
        win_rate=win_rate,
        computed_at=current_ms,
        window_days=window_days,
    )


class AnalyticsCache:
    """Debounced, last-good-snapshot cache of the analytics aggregate."""

    def __init__(
        self,
        database: IndexerDatabase,
        logger: logging.Logger | None = None,
        broadcaster: Broadcaster | None = None,
        max_age_seconds: float = 10.0,
        debounce_seconds: float = 1.5,
        default_window_days: int = 7,
    ) -> None:
        self._db = database
        self._logger = logger or logging.getLogger("wave.analytics")
        self._broadcaster = broadcaster
        self._max_age_ms = int(max_age_seconds * 1000)
        self._debounce_seconds = debounce_seconds
        self._default_window = default_window_days

        self._snapshot: AnalyticsSnapshot | None = None
        # Sleeping debounce task per window; removed once it starts computing
        self._pending: dict[int, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()

        self.recompute_count: int = 0
        self.recompute_failures: int = 0

    @property
    def snapshot(self) -> AnalyticsSnapshot | None:
        return self._snapshot

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self) -> None:
        """Warm the cache; a failure here is logged, not fatal."""
        try:
            await self.get(self._default_window)
        except Exception:
            self._logger.exception("Initial analytics compute failed")

    async def stop(self) -> None:
        """Cancel pending and running recompute tasks."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
        self._pending.clear()

    # ── Public API ───────────────────────────────────────────

    async def get(self, window_days: int | None = None) -> AnalyticsSnapshot:
        """Fresh-enough cached snapshot, or a synchronous recompute."""
        window = window_days or self._default_window
        cached = self._snapshot
        if cached and cached.window_days == window and now_ms() - cached.computed_at < self._max_age_ms:
            return cached
        return await self.recompute(window)

    async def recompute(self, window_days: int) -> AnalyticsSnapshot:
        """Compute from the store and replace the cache. Raises on store errors."""
        now = datetime.now(timezone.utc)
        current_ms = int(now.timestamp() * 1000)
        window_start = current_ms - window_days * DAY_MS
        since = min(window_start, growth_since_ms(now))
        history = await self._db.get_history_since(since)
        bets_by_day = await self._db.count_bets_by_day(window_start)
        loop = asyncio.get_running_loop()
        snapshot = await loop.run_in_executor(
            None, compute_snapshot, history, bets_by_day, window_days, now,
        )
        self._snapshot = snapshot
        self.recompute_count += 1
        return snapshot

    def notify_new_history_row(self) -> None:
        """A win was recorded; debounce a recompute of the current window."""
        self.schedule_recompute()

    def schedule_recompute(self, window_days: int | None = None) -> None:
        """(Re)start the debounce timer; a still-sleeping task is replaced."""
        window = window_days or (self._snapshot.window_days if self._snapshot else self._default_window)
        existing = self._pending.get(window)
        if existing is not None and not existing.done():
            existing.cancel()
        task = asyncio.create_task(self._debounced_recompute(window))
        self._pending[window] = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ── Internal ─────────────────────────────────────────────

    async def _debounced_recompute(self, window_days: int) -> None:
        await asyncio.sleep(self._debounce_seconds)
        if self._pending.get(window_days) is asyncio.current_task():
            del self._pending[window_days]
        try:
            snapshot = await self.recompute(window_days)
        except Exception:
            self.recompute_failures += 1
            self._logger.exception("Analytics recompute failed; keeping previous snapshot")
            return
        if self._broadcaster is not None:
            self._broadcaster.analytics_updated(snapshot.to_payload())
