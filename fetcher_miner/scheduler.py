from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from .events import EventBus, HashProgressEvent, MiningStartEvent, SolutionSubmitEvent
from .mining.difficulty import difficulty_zero_bits, matches_difficulty
from .mining.errors import HashServiceError
from .mining.nonce import generate_nonce
from .mining.preimage import build_preimage
from .session import CancelToken, MiningSession
from .submitter import SolutionSubmitter, SubmitOutcome
from .wallet import Identity

log = logging.getLogger("fetcher_miner.scheduler")


class HashEngine(Protocol):
    async def hash_batch(self, preimages: Sequence[str]) -> List[str]: ...


class MineStatus(str, Enum):
    SUBMITTED = "submitted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class MineOutcome:
    status: MineStatus
    hashes: int = 0
    submit: Optional[SubmitOutcome] = None


@dataclass
class Candidate:
    nonce: str
    preimage: str


class IdentityMiner:
    """
    Mines one identity against the token's challenge until it submits a
    solution or the token is cancelled. At most one submission per call.
    """

    def __init__(
        self,
        session: MiningSession,
        engine: HashEngine,
        submitter: SolutionSubmitter,
        events: EventBus,
        *,
        batch_size: int = 1000,
        error_backoff: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session = session
        self._engine = engine
        self._submitter = submitter
        self._events = events
        self.batch_size = max(1, int(batch_size))
        self.error_backoff = error_backoff
        self._clock = clock

    def _build_batch(self, identity: Identity, token: CancelToken, worker_id: int) -> List[Candidate]:
        batch: List[Candidate] = []
        challenge = token.challenge
        for _ in range(self.batch_size):
            if token.cancelled:
                break
            nonce = generate_nonce(worker_id)
            batch.append(Candidate(nonce, build_preimage(nonce, identity.address, challenge)))
        return batch

    async def mine(
        self,
        identity: Identity,
        token: CancelToken,
        *,
        is_dev_fee: bool = False,
        worker_id: int = 0,
    ) -> MineOutcome:
        session = self._session
        challenge = token.challenge
        challenge_id = challenge.challenge_id
        if session.dedup.is_solved(identity.address, challenge_id):
            log.info("Worker %d: %s already solved %s", identity.index, identity.address, challenge_id)
            return MineOutcome(MineStatus.SKIPPED)

        if identity.index >= 0:
            session.processed.add(identity.index)
        zero_bits = difficulty_zero_bits(challenge.difficulty)
        log.info(
            "%sWorker %d: starting to mine %s (requires %d leading zero bits)",
            "[DEV FEE] " if is_dev_fee else "", identity.index, identity.short, zero_bits,
        )
        self._events.publish(
            MiningStartEvent(address=identity.address, address_index=identity.index, challenge_id=challenge_id)
        )

        hash_count = 0
        last_progress = self._clock()
        while token.live:
            batch = self._build_batch(identity, token, worker_id)
            if not batch:
                break
            try:
                digests = await self._engine.hash_batch([c.preimage for c in batch])
            except HashServiceError as exc:
                log.error("Worker %d: batch hash computation error: %s", identity.index, exc)
                digests = None
                await asyncio.sleep(self.error_backoff)
            if token.cancelled:
                # results computed for a superseded challenge are discarded
                break

            if digests is not None:
                hash_count += len(digests)
                session.total_hashes += len(digests)
                for candidate, digest in zip(batch, digests):
                    if not matches_difficulty(digest, challenge.difficulty):
                        continue
                    if session.dedup.is_submitted(digest):
                        log.info("Duplicate solution %s… already submitted, skipping", digest[:16])
                        continue
                    if session.dedup.is_solved(identity.address, challenge_id):
                        return MineOutcome(MineStatus.SKIPPED, hashes=hash_count)
                    return await self._accept(identity, token, candidate, digest, hash_count, is_dev_fee)

            now = self._clock()
            elapsed = now - last_progress
            last_progress = now
            interval = len(digests) if digests is not None else 0
            rate = interval / elapsed if elapsed > 0 else 0.0
            log.debug(
                "Worker %d: %d hashes @ %.0f H/s (challenge %s…)",
                identity.index, hash_count, rate, challenge_id[:8],
            )
            self._events.publish(
                HashProgressEvent(
                    address=identity.address,
                    address_index=identity.index,
                    hashes_computed=hash_count,
                    interval_hashes=interval,
                    elapsed=elapsed,
                    hash_rate=rate,
                )
            )
        return MineOutcome(MineStatus.CANCELLED, hashes=hash_count)

    async def _accept(
        self,
        identity: Identity,
        token: CancelToken,
        candidate: Candidate,
        digest: str,
        hash_count: int,
        is_dev_fee: bool,
    ) -> MineOutcome:
        dedup = self._session.dedup
        # Both marks happen before any await so no sibling can submit for the pair.
        dedup.mark_submitted(digest)
        dedup.mark_solved(identity.address, token.challenge_id)
        log.info(
            "Solution found! address=%s nonce=%s hash=%s…",
            identity.address, candidate.nonce, digest[:16],
        )
        self._events.publish(
            SolutionSubmitEvent(
                address=identity.address,
                address_index=identity.index,
                challenge_id=token.challenge_id,
                nonce=candidate.nonce,
                preimage=candidate.preimage[:50] + "...",
                is_dev_fee=is_dev_fee,
            )
        )
        outcome = await self._submitter.submit(
            identity,
            token.challenge,
            candidate.nonce,
            digest,
            candidate.preimage,
            is_dev_fee=is_dev_fee,
        )
        status = MineStatus.SUBMITTED if outcome.accepted else MineStatus.REJECTED
        log.info("Worker %d: solution %s, stopping mining for this address", identity.index, status.value)
        return MineOutcome(status, hashes=hash_count, submit=outcome)

    async def mine_fee(self, recipient: Identity, token: CancelToken) -> MineOutcome:
        return await self.mine(recipient, token, is_dev_fee=True)


class BatchScheduler:
    """
    Splits eligible identities into consecutive batches of ``worker_threads``;
    identities of one batch mine concurrently and the next batch starts only
    once the whole batch is done.
    """

    def __init__(
        self,
        session: MiningSession,
        miner: IdentityMiner,
        *,
        worker_threads: int = 10,
        after_batches: Optional[Callable[[], Awaitable[object]]] = None,
    ) -> None:
        self._session = session
        self._miner = miner
        self.worker_threads = max(1, int(worker_threads))
        self._after_batches = after_batches

    def eligible(self, identities: Sequence[Identity], challenge_id: str) -> List[Identity]:
        dedup = self._session.dedup
        return [
            ident
            for ident in identities
            if ident.registered and not dedup.is_solved(ident.address, challenge_id)
        ]

    async def run(self, identities: Sequence[Identity]) -> int:
        """Mine the current challenge for every eligible identity; return accepted count."""
        session = self._session
        if session.mining or session.challenge is None:
            return 0
        session.mining = True
        token = session.token()
        accepted = 0
        try:
            session.reset_hash_window()
            registered = [i for i in identities if i.registered]
            todo = self.eligible(identities, token.challenge_id)
            if not todo:
                log.info("All addresses have already solved challenge %s", token.challenge_id)
                return 0
            log.info(
                "Mining for %d addresses (%d already solved) with %d parallel workers",
                len(todo), len(registered) - len(todo), self.worker_threads,
            )

            for start in range(0, len(todo), self.worker_threads):
                if token.cancelled:
                    break
                batch = todo[start : start + self.worker_threads]
                log.info(
                    "Processing batch of %d addresses (addresses %d to %d)",
                    len(batch), start, start + len(batch) - 1,
                )
                results = await asyncio.gather(
                    *(self._mine_one(ident, token, wid) for wid, ident in enumerate(batch)),
                )
                accepted += sum(1 for r in results if r.status is MineStatus.SUBMITTED)

            if token.live and self._after_batches is not None:
                await self._after_batches()
            return accepted
        finally:
            if session.epoch == token.epoch:
                session.mining = False

    async def _mine_one(self, identity: Identity, token: CancelToken, worker_id: int) -> MineOutcome:
        try:
            return await self._miner.mine(identity, token, worker_id=worker_id)
        except Exception as exc:
            # one identity failing never aborts its siblings
            log.error("Worker %d: mining failed: %s", identity.index, exc, exc_info=True)
            return MineOutcome(MineStatus.CANCELLED)


__all__ = [
    "BatchScheduler",
    "Candidate",
    "HashEngine",
    "IdentityMiner",
    "MineOutcome",
    "MineStatus",
]
