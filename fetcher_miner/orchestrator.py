from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, List, Optional, Protocol

from .api_client import ScavengerClient, SubmitResult
from .challenge import Challenge, ChallengePhase, ChallengeResponse
from .config import MinerConfig
from .devfee import DevFeeManager, FeeScheduler
from .events import ErrorEvent, EventBus, RegistrationProgressEvent, StatsEvent, StatusEvent
from .hash_client import HashEngineClient, wait_until_ready
from .mining.errors import ConfigurationError, MinerError, normalize_exc
from .receipts import DedupState, ReceiptsJournal
from .scheduler import BatchScheduler, IdentityMiner
from .session import MiningSession
from .stats import MiningStats, snapshot
from .submitter import SolutionSubmitter
from .wallet import Identity, Wallet

log = logging.getLogger("fetcher_miner.core")


class ChallengeApi(Protocol):
    async def fetch_challenge(self) -> ChallengeResponse: ...

    async def fetch_terms(self) -> str: ...

    async def register(self, address: str, signature: str, public_key: str) -> Any: ...

    async def submit_solution(self, address: str, challenge_id: str, nonce: str) -> SubmitResult: ...


class ComputeContext(Protocol):
    async def init_rom(self, no_pre_mine: str) -> None: ...

    async def is_rom_ready(self) -> bool: ...

    async def hash_batch(self, preimages: List[str]) -> List[str]: ...


class MiningOrchestrator:
    """
    Top-level driver: polls the challenge endpoint on a fixed interval and
    drives registration, context initialization, batch mining and fee
    catch-up from what it sees.
    """

    def __init__(
        self,
        config: MinerConfig,
        *,
        wallet: Optional[Wallet],
        api: Optional[ChallengeApi] = None,
        engine: Optional[ComputeContext] = None,
        journal: Optional[ReceiptsJournal] = None,
        fees: Optional[DevFeeManager] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.config = config
        self.events = events or EventBus(maxsize=config.event_queue_size)
        self.session = MiningSession()
        self.identities: List[Identity] = []

        self._wallet = wallet
        self._api = api or ScavengerClient(
            config.api_base, timeout=config.http_timeout, submit_timeout=config.submit_timeout
        )
        self._engine = engine or HashEngineClient(config.hash_url)
        self._journal = journal or ReceiptsJournal(config.storage_dir)
        self._fees = fees or DevFeeManager(
            api_url=config.devfee_url,
            ratio=config.devfee_ratio,
            cache_file=config.devfee_cache_file,
            cache_ttl=config.devfee_cache_ttl,
            timeout=config.http_timeout,
        )

        self.submitter = SolutionSubmitter(self.session, self._api, self._journal, self.events, self._fees)
        self.miner = IdentityMiner(
            self.session, self._engine, self.submitter, self.events, batch_size=config.batch_size
        )
        self.fee_scheduler = FeeScheduler(
            self.session, self._fees, self.miner.mine_fee, max_catchup=config.devfee_max_catchup
        )
        self.submitter.on_user_solution = self.fee_scheduler.check
        self.scheduler = BatchScheduler(
            self.session,
            self.miner,
            worker_threads=config.worker_threads,
            after_batches=self.fee_scheduler.check,
        )

        self._poll_task: Optional[asyncio.Task] = None
        self._mining_task: Optional[asyncio.Task] = None

    # ------------------- lifecycle -------------------

    @property
    def running(self) -> bool:
        return self.session.running

    async def start(self, credential: str) -> None:
        if self.session.running:
            log.info("Mining already running")
            return
        if not credential:
            raise ConfigurationError(message="missing wallet credential")
        if self._wallet is None:
            raise ConfigurationError(message="wallet not initialized")
        try:
            identities = await self._wallet.load(credential)
        except MinerError:
            raise
        except Exception as exc:
            raise ConfigurationError(
                message=f"failed to load wallet: {exc}",
                context={"type": type(exc).__name__},
            ) from exc
        self.identities = list(identities)
        log.info("Loaded wallet with %d addresses", len(self.identities))

        self.session.dedup = DedupState.load(self._journal)
        if not self.config.devfee_enabled:
            log.info("Dev fee disabled (ratio=%d)", self.config.devfee_ratio)
        await self._ensure_registered(self._wallet)

        self.session.running = True
        self.session.start_time = time.time()
        self.session.solutions_found = 0
        self._poll_task = asyncio.create_task(self._poll_loop(), name="challenge-poller")
        self.events.publish(StatusEvent(active=True, challenge_id=self.session.challenge_id))

    def _halt(self) -> None:
        if not self.session.running:
            return
        self.session.running = False
        self.session.cancel_inflight()
        self.events.publish(StatusEvent(active=False, challenge_id=None))

    async def stop(self) -> None:
        self._halt()
        current = asyncio.current_task()
        for task in (self._poll_task, self._mining_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._poll_task = None
        self._mining_task = None

    async def close(self) -> None:
        await self.stop()
        await self.submitter.drain()
        for client in (self._api, self._engine, self._fees):
            closer = getattr(client, "close", None)
            if closer is not None:
                await closer()
        self.events.close()

    async def wait_stopped(self) -> None:
        if self._poll_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task

    # ------------------- polling -------------------

    async def _poll_loop(self) -> None:
        while self.session.running:
            await self.poll_once()
            if not self.session.running:
                break
            await asyncio.sleep(self.config.poll_interval)

    async def poll_once(self) -> None:
        """One tick of the state machine. Errors are reported, never raised."""
        try:
            await self._poll_and_mine()
        except Exception as exc:
            err = normalize_exc(exc)
            log.error("Poll error: %s", err, exc_info=not isinstance(exc, MinerError))
            self.events.publish(ErrorEvent(message=err.message, code=int(err.code), context=err.context))
        if self.session.running:
            self.events.publish(StatsEvent(stats=self.get_stats().to_dict()))

    async def _poll_and_mine(self) -> None:
        state = await self._api.fetch_challenge()

        if state.code is ChallengePhase.BEFORE:
            log.info("Mining not started yet. Starts at: %s", state.starts_at)
            return

        if state.code is ChallengePhase.AFTER:
            log.info("Mining period ended")
            self._halt()
            return

        challenge = state.challenge
        if challenge is None or challenge.challenge_id == self.session.challenge_id:
            return
        await self._switch_challenge(challenge)

    async def _switch_challenge(self, challenge: Challenge) -> None:
        session = self.session
        log.info("New challenge detected: %s", challenge.challenge_id)

        was_mining = session.mining
        session.cancel_inflight()
        # Nothing may mine until the new context is ready; a readiness timeout
        # leaves no challenge adopted and the next poll retries the switch.
        session.challenge = None
        if was_mining:
            log.info("Stopping current mining for context reinitialization")
            await asyncio.sleep(self.config.cancel_grace)

        session.processed.clear()

        log.info("Initializing compute context")
        await self._engine.init_rom(challenge.no_pre_mine)
        waited = await wait_until_ready(
            self._engine,
            max_wait=self.config.rom_max_wait,
            poll_interval=self.config.rom_poll_interval,
        )
        log.info("Compute context ready after %.1fs", waited)

        session.challenge = challenge
        self.events.publish(StatusEvent(active=True, challenge_id=challenge.challenge_id))

        if not session.mining and session.running:
            self._mining_task = asyncio.create_task(self._run_scheduler(), name="batch-scheduler")

    async def _run_scheduler(self) -> None:
        try:
            accepted = await self.scheduler.run(self.identities)
            log.info("Batch scheduler finished: %d solutions accepted", accepted)
        except Exception as exc:
            err = normalize_exc(exc)
            log.error("Mining loop failed: %s", err, exc_info=True)
            self.events.publish(ErrorEvent(message=err.message, code=int(err.code), context=err.context))

    # ------------------- registration -------------------

    async def _ensure_registered(self, wallet: Wallet) -> None:
        pending = [i for i in self.identities if not i.registered]
        if not pending:
            log.info("All addresses already registered")
            return
        total = len(pending)
        done = 0
        log.info("Registering %d addresses", total)
        for ident in pending:
            self.events.publish(
                RegistrationProgressEvent(
                    address=ident.address,
                    address_index=ident.index,
                    current=done,
                    total=total,
                    success=False,
                    message=f"Registering address {ident.index}...",
                )
            )
            try:
                await self._register(wallet, ident)
            except Exception as exc:
                err = normalize_exc(exc)
                log.error("Failed to register address %d: %s", ident.index, err)
                self.events.publish(
                    RegistrationProgressEvent(
                        address=ident.address,
                        address_index=ident.index,
                        current=done,
                        total=total,
                        success=False,
                        message=f"Failed to register address {ident.index}: {err.message}",
                    )
                )
                continue
            done += 1
            self.events.publish(
                RegistrationProgressEvent(
                    address=ident.address,
                    address_index=ident.index,
                    current=done,
                    total=total,
                    success=True,
                    message=f"Address {ident.index} registered successfully",
                )
            )
            await asyncio.sleep(self.config.registration_delay)

    async def _register(self, wallet: Wallet, ident: Identity) -> None:
        message = await self._api.fetch_terms()
        signature = await wallet.sign_message(ident.index, message)
        await self._api.register(ident.address, signature, ident.public_key)
        wallet.mark_registered(ident.index)
        ident.registered = True

    # ------------------- stats -------------------

    def get_stats(self) -> MiningStats:
        return snapshot(self.session, self.identities, worker_threads=self.config.worker_threads)


__all__ = ["MiningOrchestrator", "ChallengeApi", "ComputeContext"]
