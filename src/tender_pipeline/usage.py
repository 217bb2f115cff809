"""Daily API usage tracking.

Counts external enrichment calls per UTC day in a small JSON file so the
daily quota is respected across runs. The file is read once when the tracker
is created and rewritten after every tracked call.
"""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from .constants import DAILY_CALL_LIMIT
from .errors import QuotaExhausted
from .models import DayUsage, QuotaState, UsageStats
from .storage import read_json, write_json_atomic

logger = logging.getLogger(__name__)

RETENTION_DAYS = 30


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuotaTracker:
    """Per-day call counter backed by a JSON file."""

    def __init__(
        self,
        path: str | Path,
        daily_limit: int = DAILY_CALL_LIMIT,
        retention_days: int = RETENTION_DAYS,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.path = Path(path)
        self.daily_limit = daily_limit
        self.retention_days = retention_days
        self._clock = clock
        self._state: Optional[QuotaState] = None

    @property
    def state(self) -> QuotaState:
        if self._state is None:
            self._state = self._load()
        return self._state

    def _load(self) -> QuotaState:
        data = read_json(self.path)
        if data is None:
            return QuotaState()
        try:
            return QuotaState.model_validate(data)
        except ValidationError:
            logger.warning("Usage file %s has an unexpected shape; resetting", self.path)
            return QuotaState()

    def _today_key(self) -> str:
        return self._clock().date().isoformat()

    def calls_today(self) -> int:
        day = self.state.days.get(self._today_key())
        return day.calls if day else 0

    def can_make_call(self) -> bool:
        return self.calls_today() < self.daily_limit

    def ensure_available(self) -> None:
        """Raise QuotaExhausted if today's limit has been reached."""
        calls = self.calls_today()
        if calls >= self.daily_limit:
            raise QuotaExhausted(calls, self.daily_limit)

    def track_call(self) -> int:
        """Record one call for today, persist, and return today's count."""
        now = self._clock().isoformat()
        key = self._today_key()
        days = self.state.days

        day = days.setdefault(key, DayUsage(calls=0, first_call=now))
        day.calls += 1
        day.last_call = now

        for old in sorted(days)[:-self.retention_days]:
            del days[old]

        write_json_atomic(self.path, self.state.model_dump(mode="json", by_alias=True))

        if day.calls % 50 == 0:
            logger.info("API usage today: %d/%d calls", day.calls, self.daily_limit)
        return day.calls

    def stats(self) -> UsageStats:
        days = self.state.days
        today = self._clock().date()
        calls = self.calls_today()

        last7 = sorted(days)[-7:]
        total7 = sum(days[k].calls for k in last7)
        avg7 = round(total7 / len(last7)) if last7 else 0

        history = []
        for offset in range(13, -1, -1):
            key = (today - timedelta(days=offset)).isoformat()
            history.append({"date": key, "calls": days[key].calls if key in days else 0})

        return UsageStats(
            today=calls,
            limit=self.daily_limit,
            percentage=round(100 * calls / self.daily_limit) if self.daily_limit else 100,
            remaining=max(0, self.daily_limit - calls),
            avg_last7=avg7,
            history=history,
        )
