from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional, Sequence

import psutil

from .session import MiningSession
from .wallet import Identity

HOUR = 3600.0


@dataclass(frozen=True)
class PeriodCounts:
    this_hour: int = 0
    previous_hour: int = 0
    today: int = 0
    yesterday: int = 0


@dataclass(frozen=True)
class MiningStats:
    active: bool
    challenge_id: Optional[str]
    solutions_found: int
    registered_addresses: int
    total_addresses: int
    hash_rate: float
    uptime: float
    start_time: Optional[float]
    cpu_usage: float
    addresses_processed_current_challenge: int
    solutions_this_hour: int
    solutions_previous_hour: int
    solutions_today: int
    solutions_yesterday: int
    worker_threads: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def count_periods(timestamps: Iterable[float], now: Optional[float] = None) -> PeriodCounts:
    """Bucket solution timestamps into clock hours and local calendar days."""
    now = time.time() if now is None else now
    local = datetime.fromtimestamp(now)
    hour_start = local.replace(minute=0, second=0, microsecond=0).timestamp()
    prev_hour_start = hour_start - HOUR
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    today_start = midnight.timestamp()
    yesterday_start = (midnight - timedelta(days=1)).timestamp()

    this_hour = previous_hour = today = yesterday = 0
    for ts in timestamps:
        if ts >= hour_start:
            this_hour += 1
        elif ts >= prev_hour_start:
            previous_hour += 1
        if ts >= today_start:
            today += 1
        elif ts >= yesterday_start:
            yesterday += 1
    return PeriodCounts(this_hour, previous_hour, today, yesterday)


def cpu_usage() -> float:
    """System-wide CPU percent since the previous call (non-blocking)."""
    return float(psutil.cpu_percent(interval=None))


def snapshot(
    session: MiningSession,
    identities: Sequence[Identity],
    *,
    worker_threads: int,
    now: Optional[float] = None,
) -> MiningStats:
    now = time.time() if now is None else now
    elapsed = now - session.hash_window_start
    periods = count_periods(session.solution_times, now)
    return MiningStats(
        active=session.running,
        challenge_id=session.challenge_id,
        solutions_found=session.solutions_found,
        registered_addresses=sum(1 for i in identities if i.registered),
        total_addresses=len(identities),
        hash_rate=session.total_hashes / elapsed if elapsed > 0 else 0.0,
        uptime=now - session.start_time if session.start_time else 0.0,
        start_time=session.start_time,
        cpu_usage=cpu_usage(),
        addresses_processed_current_challenge=len(session.processed),
        solutions_this_hour=periods.this_hour,
        solutions_previous_hour=periods.previous_hour,
        solutions_today=periods.today,
        solutions_yesterday=periods.yesterday,
        worker_threads=worker_threads,
    )


__all__ = ["MiningStats", "PeriodCounts", "count_periods", "cpu_usage", "snapshot"]
