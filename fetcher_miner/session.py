from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import List, Optional, Set

from .challenge import Challenge
from .receipts import DedupState


@dataclass
class MiningSession:
    """
    Shared orchestrator state, owned by one coordinator and handed by
    reference to every scheduler and miner task.

    ``epoch`` is bumped whenever in-flight mining must stop (challenge switch
    or stop request); tokens taken before the bump go stale.
    """

    dedup: DedupState = field(default_factory=DedupState)
    running: bool = False
    mining: bool = False
    epoch: int = 0
    challenge: Optional[Challenge] = None
    processed: Set[int] = field(default_factory=set)
    solutions_found: int = 0
    solution_times: List[float] = field(default_factory=list)
    total_hashes: int = 0
    hash_window_start: float = field(default_factory=time.time)
    start_time: Optional[float] = None

    @property
    def challenge_id(self) -> Optional[str]:
        return self.challenge.challenge_id if self.challenge else None

    def cancel_inflight(self) -> None:
        """Flag every outstanding token as cancelled."""
        self.epoch += 1
        self.mining = False

    def token(self) -> "CancelToken":
        if self.challenge is None:
            raise RuntimeError("no current challenge to mine")
        return CancelToken(self, self.epoch, self.challenge)

    def reset_hash_window(self) -> None:
        self.total_hashes = 0
        self.hash_window_start = time.time()

    def record_solution(self, ts: Optional[float] = None) -> None:
        self.solutions_found += 1
        self.solution_times.append(time.time() if ts is None else ts)


class CancelToken:
    """
    Snapshot of (epoch, challenge) taken when a miner starts. The token stays
    live while the session is running, no cancellation happened since, and
    the current challenge is still the one it was taken for.
    """

    __slots__ = ("_session", "epoch", "challenge")

    def __init__(self, session: MiningSession, epoch: int, challenge: Challenge) -> None:
        self._session = session
        self.epoch = epoch
        self.challenge = challenge

    @property
    def challenge_id(self) -> str:
        return self.challenge.challenge_id

    @property
    def cancelled(self) -> bool:
        s = self._session
        return (
            not s.running
            or s.epoch != self.epoch
            or s.challenge_id != self.challenge.challenge_id
        )

    @property
    def live(self) -> bool:
        return not self.cancelled


__all__ = ["MiningSession", "CancelToken"]
