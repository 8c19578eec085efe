"""每日配额 — 按自然日计数外部调用，额度耗尽即拒绝。"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class QuotaWindow:
    count: int
    window_day: date


@dataclass(frozen=True)
class QuotaDecision:
    granted: bool
    remaining: int
    resets_at: datetime


@dataclass(frozen=True)
class QuotaSnapshot:
    count: int
    limit: int
    remaining: int
    resets_at: datetime


class QuotaTracker:
    """进程内每日配额计数器。

    日期切换在每次调用时惰性检查，不依赖后台定时器。
    try_reserve 内部没有 await，且由锁保护，因此检查 + 自增是一个原子步骤。
    """

    def __init__(self, daily_limit: int, clock: Clock = local_now) -> None:
        self.daily_limit = daily_limit
        self._clock = clock
        self._lock = threading.Lock()
        self._window = QuotaWindow(count=0, window_day=clock().date())

    def _resets_at(self, now: datetime) -> datetime:
        tomorrow = now.date() + timedelta(days=1)
        return datetime.combine(tomorrow, time.min, tzinfo=now.tzinfo)

    def _roll(self, now: datetime) -> None:
        today = now.date()
        if today != self._window.window_day:
            logger.info(
                "Quota window rolled over: %s (%d used) → %s",
                self._window.window_day, self._window.count, today,
            )
            self._window = QuotaWindow(count=0, window_day=today)

    def try_reserve(self) -> QuotaDecision:
        """尝试占用一个调用名额。"""
        with self._lock:
            now = self._clock()
            self._roll(now)
            if self._window.count >= self.daily_limit:
                logger.warning("Daily quota exhausted (%d/%d)", self._window.count, self.daily_limit)
                return QuotaDecision(granted=False, remaining=0, resets_at=self._resets_at(now))
            self._window.count += 1
            remaining = self.daily_limit - self._window.count
            return QuotaDecision(granted=True, remaining=remaining, resets_at=self._resets_at(now))

    def current_window(self) -> QuotaSnapshot:
        with self._lock:
            now = self._clock()
            self._roll(now)
            return QuotaSnapshot(
                count=self._window.count,
                limit=self.daily_limit,
                remaining=max(0, self.daily_limit - self._window.count),
                resets_at=self._resets_at(now),
            )

    @property
    def remaining(self) -> int:
        return self.current_window().remaining

    def sweep(self) -> None:
        """主动检查日期切换（供定时任务调用）。"""
        with self._lock:
            self._roll(self._clock())
