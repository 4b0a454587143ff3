from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Dict, List, Optional

log = logging.getLogger("fetcher_miner.events")


# ---------------------- Event records ----------------------


@dataclass(frozen=True)
class MiningEvent:
    """Base record; ``type`` is the discriminator observers switch on."""

    type: ClassVar[str] = "event"

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["type"] = self.type
        return d


@dataclass(frozen=True)
class StatusEvent(MiningEvent):
    type: ClassVar[str] = "status"

    active: bool
    challenge_id: Optional[str] = None


@dataclass(frozen=True)
class MiningStartEvent(MiningEvent):
    type: ClassVar[str] = "mining_start"

    address: str
    address_index: int
    challenge_id: str


@dataclass(frozen=True)
class HashProgressEvent(MiningEvent):
    type: ClassVar[str] = "hash_progress"

    address: str
    address_index: int
    hashes_computed: int
    interval_hashes: int
    elapsed: float
    hash_rate: float


@dataclass(frozen=True)
class SolutionSubmitEvent(MiningEvent):
    type: ClassVar[str] = "solution_submit"

    address: str
    address_index: int
    challenge_id: str
    nonce: str
    preimage: str
    is_dev_fee: bool = False


@dataclass(frozen=True)
class SolutionResultEvent(MiningEvent):
    type: ClassVar[str] = "solution_result"

    address: str
    address_index: int
    success: bool
    message: str
    is_dev_fee: bool = False
    status: Optional[int] = None


@dataclass(frozen=True)
class RegistrationProgressEvent(MiningEvent):
    type: ClassVar[str] = "registration_progress"

    address: str
    address_index: int
    current: int
    total: int
    success: bool
    message: str


@dataclass(frozen=True)
class ErrorEvent(MiningEvent):
    type: ClassVar[str] = "error"

    message: str
    code: Optional[int] = None
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StatsEvent(MiningEvent):
    type: ClassVar[str] = "stats"

    stats: Dict[str, Any]


# ---------------------- Bus ----------------------


class Subscription:
    """
    One observer's bounded mailbox. Iterate with ``async for`` or call
    :meth:`get`; iteration ends once the subscription is closed and drained.
    """

    def __init__(self, bus: "EventBus", maxsize: int) -> None:
        self._bus = bus
        self._queue: "asyncio.Queue[Optional[MiningEvent]]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, event: Optional[MiningEvent]) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                # Oldest-first drop keeps slow observers current.
                self._queue.get_nowait()
                self.dropped += 1

    async def get(self) -> Optional[MiningEvent]:
        """Next event, or None once closed and drained."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def get_nowait(self) -> Optional[MiningEvent]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> List[MiningEvent]:
        """Pop every queued event without waiting."""
        out: List[MiningEvent] = []
        while True:
            event = self.get_nowait()
            if event is None:
                return out
            out.append(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._detach(self)
        self._offer(None)  # wake a pending get()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> MiningEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """
    Fan-out publisher for lifecycle and progress notifications.

    Subscribers only see events published after they subscribed; publishing
    never blocks the miner, even when an observer stops reading.
    """

    def __init__(self, *, maxsize: int = 1000) -> None:
        self._maxsize = max(1, int(maxsize))
        self._subscribers: List[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        sub = Subscription(self, maxsize or self._maxsize)
        self._subscribers.append(sub)
        return sub

    def _detach(self, sub: Subscription) -> None:
        try:
            self._subscribers.remove(sub)
        except ValueError:
            pass

    def publish(self, event: MiningEvent) -> None:
        log.debug("event %s %s", event.type, event)
        for sub in list(self._subscribers):
            sub._offer(event)

    def close(self) -> None:
        for sub in list(self._subscribers):
            sub.close()


__all__ = [
    "MiningEvent",
    "StatusEvent",
    "MiningStartEvent",
    "HashProgressEvent",
    "SolutionSubmitEvent",
    "SolutionResultEvent",
    "RegistrationProgressEvent",
    "ErrorEvent",
    "StatsEvent",
    "Subscription",
    "EventBus",
]
