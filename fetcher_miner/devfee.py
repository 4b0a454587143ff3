from __future__ import annotations

import asyncio
import json
import logging
import os
import pathlib
import secrets
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from .mining.errors import MinerError
from .session import CancelToken, MiningSession
from .wallet import Identity, fee_recipient

log = logging.getLogger("fetcher_miner.devfee")

VALID_ADDRESS_PREFIXES = ("tnight1", "addr1")


@dataclass
class FeeAddress:
    address: str
    index: int
    fetched_at: float
    used_count: int = 0


@dataclass
class FeeState:
    """Persisted fee bookkeeping (JSON cache file)."""

    client_id: str = ""
    ratio: int = 25
    total_fee_solutions: int = 0
    current_address: Optional[FeeAddress] = None
    last_fetch_error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeeState":
        addr = data.get("current_address")
        return cls(
            client_id=str(data.get("client_id") or ""),
            ratio=int(data.get("ratio") or 25),
            total_fee_solutions=int(data.get("total_fee_solutions") or 0),
            current_address=FeeAddress(**addr) if isinstance(addr, dict) else None,
            last_fetch_error=data.get("last_fetch_error"),
        )


def generate_client_id() -> str:
    return f"desktop-{secrets.token_hex(16)}"


class DevFeeManager:
    """
    Tracks how many fee solutions were paid and which address receives the
    next one. The recipient comes from an assignment service and is cached
    for ``cache_ttl`` seconds; a failed fetch falls back to the cached one.
    """

    def __init__(
        self,
        *,
        api_url: str,
        ratio: int,
        cache_file: os.PathLike | str,
        cache_ttl: float = 3600.0,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.api_url = api_url
        self.cache_file = pathlib.Path(cache_file)
        self.cache_ttl = cache_ttl
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self.state = self._load_cache()
        self.state.ratio = ratio
        if not self.state.client_id:
            self.state.client_id = generate_client_id()
            self._save_cache()

    # ------------- persistence -------------

    def _load_cache(self) -> FeeState:
        if not self.cache_file.exists():
            return FeeState()
        try:
            with open(self.cache_file, "r", encoding="utf-8") as f:
                return FeeState.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as exc:
            log.error("Failed to load fee cache %s: %s", self.cache_file, exc)
            return FeeState()

    def _save_cache(self) -> None:
        try:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.cache_file.with_suffix(".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(asdict(self.state), f, indent=2)
            os.replace(tmp, self.cache_file)
        except OSError as exc:
            log.error("Failed to save fee cache %s: %s", self.cache_file, exc)

    # ------------- accessors -------------

    @property
    def enabled(self) -> bool:
        return self.state.ratio > 0 and bool(self.api_url)

    @property
    def ratio(self) -> int:
        return self.state.ratio

    @property
    def total_fee_solutions(self) -> int:
        return self.state.total_fee_solutions

    def record_fee_solution(self) -> None:
        self.state.total_fee_solutions += 1
        if self.state.current_address is not None:
            self.state.current_address.used_count += 1
        self._save_cache()

    # ------------- recipient assignment -------------

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request_assignment(self) -> Dict[str, Any]:
        payload = {"clientId": self.state.client_id, "clientType": "desktop"}
        async with self._ensure_session().post(self.api_url, json=payload) as resp:
            body = await resp.json(content_type=None)
            if resp.status != 200 or not isinstance(body, dict):
                message = body.get("message") if isinstance(body, dict) else None
                raise MinerError(message=message or f"assignment service answered HTTP {resp.status}")
            return body

    async def fetch_address(self) -> str:
        if not self.enabled:
            raise MinerError(message="dev fee is not enabled")
        try:
            body = await self._request_assignment()
            address = str(body.get("devAddress") or "")
            if not address.startswith(VALID_ADDRESS_PREFIXES):
                raise MinerError(message=f"invalid fee address format: {address!r}")
            self.state.current_address = FeeAddress(
                address=address,
                index=int(body.get("devAddressIndex") or 0),
                fetched_at=self._clock(),
            )
            self.state.last_fetch_error = None
            self._save_cache()
            log.info(
                "Fetched fee address %s (index=%s new=%s)",
                address,
                body.get("devAddressIndex"),
                body.get("isNewAssignment"),
            )
            return address
        except (MinerError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            self.state.last_fetch_error = str(exc) or type(exc).__name__
            self._save_cache()
            if self.state.current_address is not None:
                log.warning("Fee address fetch failed (%s); using cached address", exc)
                return self.state.current_address.address
            raise MinerError(message=f"failed to fetch fee address: {exc}") from exc

    async def get_address(self) -> str:
        addr = self.state.current_address
        if addr is not None and self._clock() - addr.fetched_at < self.cache_ttl:
            return addr.address
        return await self.fetch_address()


MineFn = Callable[[Identity, CancelToken], Awaitable[Any]]


class FeeScheduler:
    """
    Recomputes owed fee solutions from counters instead of keeping a schedule:

        expected = user_solutions // ratio

    and mines ``expected - paid`` of them, capped at ``max_catchup`` per check.
    Checks are serialized so two triggers never pay the same fee twice.
    """

    def __init__(
        self,
        session: MiningSession,
        manager: DevFeeManager,
        mine: MineFn,
        *,
        max_catchup: int = 10,
    ) -> None:
        self._session = session
        self._manager = manager
        self._mine = mine
        self._max_catchup = max(1, int(max_catchup))
        self._lock = asyncio.Lock()

    def owed(self) -> int:
        ratio = self._manager.ratio
        if ratio <= 0:
            return 0
        expected = self._session.dedup.user_solutions // ratio
        return expected - self._manager.total_fee_solutions

    async def check(self) -> int:
        """Mine owed fee solutions; return how many were accepted."""
        if not self._manager.enabled:
            return 0
        async with self._lock:
            owed = self.owed()
            log.info(
                "Fee check: user=%d paid=%d ratio=1/%d owed=%d",
                self._session.dedup.user_solutions,
                self._manager.total_fee_solutions,
                self._manager.ratio,
                owed,
            )
            if owed == 0:
                return 0
            if owed < 0:
                log.warning("Fee solutions ahead of schedule by %d; nothing to do", -owed)
                return 0
            return await self._catch_up(min(owed, self._max_catchup), owed)

    async def _catch_up(self, rounds: int, owed: int) -> int:
        if rounds < owed:
            log.info("Capping fee catch-up at %d of %d owed rounds", rounds, owed)
        session = self._session
        if not session.running or session.challenge is None:
            log.info("Fee catch-up deferred: no active challenge")
            return 0
        # One token for the whole catch-up: a challenge switch ends it.
        token = session.token()
        paid_before = self._manager.total_fee_solutions
        for i in range(1, rounds + 1):
            if token.cancelled:
                log.info("Fee round %d/%d deferred: challenge %s superseded", i, rounds, token.challenge_id)
                break
            try:
                address = await self._manager.get_address()
                if token.cancelled:
                    log.info("Fee round %d/%d deferred: challenge %s superseded", i, rounds, token.challenge_id)
                    break
                if session.dedup.is_solved(address, token.challenge_id):
                    log.info(
                        "Fee round %d/%d deferred: %s already solved %s",
                        i, rounds, address, token.challenge_id,
                    )
                    break
                log.info("Fee round %d/%d mining for %s", i, rounds, address)
                await self._mine(fee_recipient(address), token)
            except Exception as exc:
                log.error("Fee round %d/%d failed: %s", i, rounds, exc)
        return self._manager.total_fee_solutions - paid_before


__all__ = ["FeeAddress", "FeeState", "DevFeeManager", "FeeScheduler", "generate_client_id"]
