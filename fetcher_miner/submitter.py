from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Set

import aiohttp

from .api_client import SubmitResult
from .challenge import Challenge
from .devfee import DevFeeManager
from .events import EventBus, SolutionResultEvent
from .mining.errors import SubmitRejected, normalize_exc
from .receipts import ErrorReceipt, ReceiptsJournal, SolutionReceipt, utc_now_iso
from .session import MiningSession
from .wallet import Identity

log = logging.getLogger("fetcher_miner.submitter")


class SolutionApi(Protocol):
    async def submit_solution(self, address: str, challenge_id: str, nonce: str) -> SubmitResult: ...


@dataclass(frozen=True)
class SubmitOutcome:
    accepted: bool
    nonce: str
    hash: str
    is_dev_fee: bool = False
    status: Optional[int] = None
    crypto_receipt: Optional[Any] = None
    error: Optional[str] = None


class SolutionSubmitter:
    """
    Sends each accepted candidate exactly once and records the outcome.

    The caller has already marked the hash submitted and the pair solved; this
    class never retries, whatever the outcome.
    """

    def __init__(
        self,
        session: MiningSession,
        api: SolutionApi,
        journal: ReceiptsJournal,
        events: EventBus,
        fees: Optional[DevFeeManager] = None,
        on_user_solution: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> None:
        self._session = session
        self._api = api
        self._journal = journal
        self._events = events
        self._fees = fees
        self.on_user_solution = on_user_solution
        self._background: Set[asyncio.Task] = set()

    async def submit(
        self,
        identity: Identity,
        challenge: Challenge,
        nonce: str,
        digest: str,
        preimage: str,
        *,
        is_dev_fee: bool = False,
    ) -> SubmitOutcome:
        tag = "[DEV FEE] " if is_dev_fee else ""
        log.info(
            "%sSubmitting solution address=%s challenge=%s nonce=%s hash=%s… preimage_len=%d",
            tag, identity.address, challenge.challenge_id, nonce, digest[:16], len(preimage),
        )
        try:
            result = await self._api.submit_solution(identity.address, challenge.challenge_id, nonce)
        except SubmitRejected as exc:
            return await self._record_failure(identity, challenge, nonce, digest, is_dev_fee, exc, exc.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return await self._record_failure(identity, challenge, nonce, digest, is_dev_fee, exc, None)
        except Exception as exc:
            # the request may already have reached the service
            log.error("Unexpected submission error: %r", exc, exc_info=True)
            return await self._record_failure(identity, challenge, nonce, digest, is_dev_fee, exc, None)
        return await self._record_success(identity, challenge, nonce, digest, is_dev_fee, result)

    # ------------------- outcomes -------------------

    async def _record_success(
        self,
        identity: Identity,
        challenge: Challenge,
        nonce: str,
        digest: str,
        is_dev_fee: bool,
        result: SubmitResult,
    ) -> SubmitOutcome:
        session = self._session
        session.record_solution()
        if is_dev_fee:
            session.dedup.fee_solutions += 1
            if self._fees is not None:
                self._fees.record_fee_solution()
        else:
            session.dedup.user_solutions += 1

        await self._write(
            self._journal.log_receipt,
            SolutionReceipt(
                ts=utc_now_iso(),
                address=identity.address,
                challenge_id=challenge.challenge_id,
                nonce=nonce,
                hash=digest,
                crypto_receipt=result.crypto_receipt,
                is_dev_fee=is_dev_fee,
            ),
        )
        self._events.publish(
            SolutionResultEvent(
                address=identity.address,
                address_index=identity.index,
                success=True,
                message="Solution accepted",
                is_dev_fee=is_dev_fee,
                status=result.status,
            )
        )
        log.info(
            "%sSolution ACCEPTED address=%s challenge=%s user=%d fee=%d",
            "[DEV FEE] " if is_dev_fee else "",
            identity.address,
            challenge.challenge_id,
            session.dedup.user_solutions,
            session.dedup.fee_solutions,
        )
        if not is_dev_fee and self.on_user_solution is not None:
            self._spawn_fee_check(self.on_user_solution)
        return SubmitOutcome(
            accepted=True,
            nonce=nonce,
            hash=digest,
            is_dev_fee=is_dev_fee,
            status=result.status,
            crypto_receipt=result.crypto_receipt,
        )

    async def _record_failure(
        self,
        identity: Identity,
        challenge: Challenge,
        nonce: str,
        digest: str,
        is_dev_fee: bool,
        exc: BaseException,
        status: Optional[int],
    ) -> SubmitOutcome:
        err = normalize_exc(exc)
        response = err.context.get("response") if isinstance(exc, SubmitRejected) else None
        details = exc.details if isinstance(exc, SubmitRejected) else None
        reason = details or err.message
        log.error(
            "Solution submission FAILED address=%s challenge=%s nonce=%s hash=%s… status=%s: %s",
            identity.address, challenge.challenge_id, nonce, digest[:32], status, reason,
        )
        await self._write(
            self._journal.log_error,
            ErrorReceipt(
                ts=utc_now_iso(),
                address=identity.address,
                challenge_id=challenge.challenge_id,
                nonce=nonce,
                hash=digest,
                error=reason,
                status=status,
                response=response,
                is_dev_fee=is_dev_fee,
            ),
        )
        self._events.publish(
            SolutionResultEvent(
                address=identity.address,
                address_index=identity.index,
                success=False,
                message=f"{reason} [Status: {status if status is not None else 'N/A'}]",
                is_dev_fee=is_dev_fee,
                status=status,
            )
        )
        return SubmitOutcome(
            accepted=False,
            nonce=nonce,
            hash=digest,
            is_dev_fee=is_dev_fee,
            status=status,
            error=reason,
        )

    async def _write(self, append: Callable[[Any], None], receipt: Any) -> None:
        # appends fsync; never on the event loop
        try:
            await asyncio.to_thread(append, receipt)
        except OSError as exc:
            log.error("Failed to journal %s for %s: %s", type(receipt).__name__, receipt.address, exc)

    # ------------------- background fee trigger -------------------

    def _spawn_fee_check(self, check: Callable[[], Awaitable[Any]]) -> None:
        task = asyncio.ensure_future(check())
        self._background.add(task)
        task.add_done_callback(self._on_fee_check_done)

    def _on_fee_check_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Background fee check failed: %s", exc)

    async def drain(self) -> None:
        """Wait for outstanding background fee checks (used on shutdown and in tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


__all__ = ["SolutionSubmitter", "SubmitOutcome", "SolutionApi"]
