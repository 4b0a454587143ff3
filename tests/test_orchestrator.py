import asyncio
import logging
import time

import pytest

from fetcher_miner.challenge import ChallengePhase, ChallengeResponse
from fetcher_miner.events import ErrorEvent, RegistrationProgressEvent, StatusEvent
from fetcher_miner.mining.errors import ChallengeFetchFailed, ConfigurationError, MiningErrorCode
from fetcher_miner.orchestrator import MiningOrchestrator
from fetcher_miner.receipts import ReceiptsJournal

from conftest import FakeApi, FakeFeeManager, FakeHashEngine, FakeWallet, active, make_challenge


class RecordingEngine(FakeHashEngine):
    """Keeps one ordered log of context initializations and hashed challenges."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.log = []

    async def init_rom(self, no_pre_mine):
        self.log.append(("init", no_pre_mine))
        await super().init_rom(no_pre_mine)

    async def is_rom_ready(self):
        ready = await super().is_rom_ready()
        if ready:
            self.log.append(("ready", self.init_calls[-1]))
        return ready

    async def hash_batch(self, preimages):
        seed = "seed-def" if "seed-def" in preimages[0] else "seed-abc"
        self.log.append(("hash", seed))
        return await super().hash_batch(preimages)


async def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


def orchestrator(config, *, api, engine, wallet=None, fees=None):
    return MiningOrchestrator(
        config,
        wallet=wallet or FakeWallet(count=3),
        api=api,
        engine=engine,
        fees=fees or FakeFeeManager(),
    )


def prime(orch, wallet):
    """Put the orchestrator in the running state without starting the poll loop."""
    orch.identities = list(wallet.identities)
    orch.session.running = True


class TestStart:
    """Wallet loading, dedup rebuild and registration on start"""

    def test_empty_credential(self, fast_config):
        orch = orchestrator(fast_config, api=FakeApi(), engine=FakeHashEngine())
        with pytest.raises(ConfigurationError, match="credential"):
            asyncio.run(orch.start(""))
        assert not orch.running

    def test_wallet_failure(self, fast_config):
        orch = orchestrator(fast_config, api=FakeApi(), engine=FakeHashEngine())
        with pytest.raises(ConfigurationError, match="wrong password"):
            asyncio.run(orch.start("not-the-password"))

    def test_missing_wallet(self, fast_config):
        orch = MiningOrchestrator(
            fast_config, wallet=None, api=FakeApi(), engine=FakeHashEngine(), fees=FakeFeeManager()
        )
        with pytest.raises(ConfigurationError):
            asyncio.run(orch.start("secret"))

    def test_registration_progress(self, fast_config):
        wallet = FakeWallet(count=2, registered=False)
        api = FakeApi([ChallengeResponse(code=ChallengePhase.BEFORE, starts_at="tomorrow")])
        api.fail_register = {"addr1user0001"}
        orch = orchestrator(fast_config, api=api, engine=FakeHashEngine(), wallet=wallet)
        sub = orch.events.subscribe()

        async def scenario():
            await orch.start("secret")
            await orch.close()

        asyncio.run(scenario())

        assert api.registered == ["addr1user0000"]
        assert wallet.signed == [0, 1]
        assert [i.registered for i in wallet.identities] == [True, False]
        progress = [e for e in sub.drain() if isinstance(e, RegistrationProgressEvent)]
        assert [(e.current, e.total, e.success) for e in progress] == [
            (0, 2, False),
            (1, 2, True),
            (1, 2, False),
            (1, 2, False),
        ]
        assert progress[-1].message.startswith("Failed to register address 1")

    def test_disabled_dev_fee_is_logged(self, fast_config, caplog):
        cfg = fast_config.with_overrides(devfee_ratio=0)
        api = FakeApi([ChallengeResponse(code=ChallengePhase.BEFORE, starts_at="tomorrow")])
        orch = orchestrator(cfg, api=api, engine=FakeHashEngine(), fees=FakeFeeManager(ratio=0))

        async def scenario():
            await orch.start("secret")
            await orch.close()

        with caplog.at_level(logging.INFO, logger="fetcher_miner.core"):
            asyncio.run(scenario())
        assert "Dev fee disabled (ratio=0)" in caplog.text


class TestPollStateMachine:
    """before / active / after handling and challenge switches"""

    def test_before_does_nothing(self, fast_config):
        engine = FakeHashEngine()
        api = FakeApi([ChallengeResponse(code=ChallengePhase.BEFORE, starts_at="tomorrow")])
        orch = orchestrator(fast_config, api=api, engine=engine)
        prime(orch, FakeWallet())
        asyncio.run(orch.poll_once())
        assert engine.init_calls == []
        assert orch.running

    def test_after_stops(self, fast_config):
        orch = orchestrator(
            fast_config, api=FakeApi([ChallengeResponse(code=ChallengePhase.AFTER)]), engine=FakeHashEngine()
        )
        prime(orch, FakeWallet())
        sub = orch.events.subscribe()
        asyncio.run(orch.poll_once())
        assert not orch.running
        statuses = [e for e in sub.drain() if isinstance(e, StatusEvent)]
        assert statuses[-1].active is False

    def test_poll_error_becomes_event(self, fast_config):
        api = FakeApi([ChallengeFetchFailed(message="HTTP 502")])
        orch = orchestrator(fast_config, api=api, engine=FakeHashEngine())
        prime(orch, FakeWallet())
        sub = orch.events.subscribe()
        asyncio.run(orch.poll_once())

        (err,) = [e for e in sub.drain() if isinstance(e, ErrorEvent)]
        assert err.message == "HTTP 502"
        assert err.code == MiningErrorCode.CHALLENGE_FETCH_FAILED
        assert orch.running

    def test_same_challenge_is_not_reinitialized(self, fast_config):
        engine = FakeHashEngine(winner=lambda p: True)
        api = FakeApi([active(make_challenge("abc"))])
        orch = orchestrator(fast_config, api=api, engine=engine)
        prime(orch, FakeWallet())

        async def scenario():
            await orch.poll_once()
            await orch.poll_once()
            await wait_for(lambda: len(api.submissions) == 3)
            await orch.stop()

        asyncio.run(scenario())
        assert engine.init_calls == ["seed-abc"]

    def test_readiness_timeout_then_recovery(self, fast_config):
        engine = FakeHashEngine(winner=lambda p: True, ready_after=-1)
        api = FakeApi([active(make_challenge("abc"))])
        orch = orchestrator(fast_config, api=api, engine=engine)
        prime(orch, FakeWallet())
        sub = orch.events.subscribe()

        async def scenario():
            await orch.poll_once()
            timed_out = [e for e in sub.drain() if isinstance(e, ErrorEvent)]
            assert orch.session.challenge is None
            assert not orch.session.mining
            assert engine.batches == []

            engine.ready_after = 0
            await orch.poll_once()
            await wait_for(lambda: len(api.submissions) == 3)
            await orch.stop()
            return timed_out

        timed_out = asyncio.run(scenario())
        assert [e.code for e in timed_out] == [MiningErrorCode.CONTEXT_INIT_TIMEOUT]
        assert engine.init_calls == ["seed-abc", "seed-abc"]

    def test_challenge_switch_mid_batch(self, fast_config):
        engine = RecordingEngine(winner=lambda p: "seed-def" in p)
        api = FakeApi([active(make_challenge("abc"))])
        wallet = FakeWallet(count=3)
        orch = orchestrator(fast_config, api=api, engine=engine, wallet=wallet)
        prime(orch, wallet)

        async def scenario():
            await orch.poll_once()
            await wait_for(lambda: len(engine.batches) >= 4)
            assert orch.session.mining
            assert orch.session.processed == {0, 1}

            api.responses = [active(make_challenge("def"))]
            await orch.poll_once()
            processed_after_switch = set(orch.session.processed)

            await wait_for(lambda: len(api.submissions) == 3)
            await wait_for(lambda: not orch.session.mining)
            await orch.stop()
            return processed_after_switch

        processed_after_switch = asyncio.run(scenario())

        assert processed_after_switch == set()
        assert {s[1] for s in api.submissions} == {"def"}
        assert orch.session.challenge_id == "def"
        assert orch.session.processed == {0, 1, 2}

        first_def_hash = engine.log.index(("hash", "seed-def"))
        assert engine.log.index(("init", "seed-def")) < first_def_hash
        assert engine.log.index(("ready", "seed-def")) < first_def_hash
        # nothing for the old challenge is hashed once the new context is requested
        init_def = engine.log.index(("init", "seed-def"))
        assert ("hash", "seed-abc") not in engine.log[init_def:]

    def test_fee_catch_up_does_not_outlive_a_switch(self, fast_config):
        engine = FakeHashEngine()
        # candidates only qualify once the context for "def" has been requested
        engine.winner = lambda p: engine.init_calls[-1:] == ["seed-def"]
        api = FakeApi([active(make_challenge("abc"))])
        wallet = FakeWallet(count=3)
        orch = orchestrator(fast_config, api=api, engine=engine, wallet=wallet)
        prime(orch, wallet)
        for ident in wallet.identities:
            orch.session.dedup.mark_solved(ident.address, "abc")
        orch.session.dedup.user_solutions = 50
        sub = orch.events.subscribe()

        def fee_hashing():
            return any("addr1feerecipient" in p for batch in engine.batches for p in batch)

        async def scenario():
            await orch.poll_once()
            fee_task = asyncio.create_task(orch.fee_scheduler.check())
            await wait_for(fee_hashing)

            engine.ready_after = -1
            api.responses = [active(make_challenge("def"))]
            await orch.poll_once()
            paid = await fee_task
            await orch.stop()
            return paid

        paid = asyncio.run(scenario())

        assert paid == 0
        assert api.submissions == []
        assert orch.session.challenge is None
        errors = [e.code for e in sub.drain() if isinstance(e, ErrorEvent)]
        assert errors == [MiningErrorCode.CONTEXT_INIT_TIMEOUT]


class TestLifecycle:
    """Start, mine, stop, restart"""

    def test_run_and_resume_without_resubmitting(self, fast_config):
        api = FakeApi([active(make_challenge("abc"))])
        engine = FakeHashEngine(winner=lambda p: True)
        orch = orchestrator(fast_config, api=api, engine=engine)

        async def first_run():
            await orch.start("secret")
            await wait_for(lambda: len(api.submissions) == 3)
            await wait_for(lambda: not orch.session.mining)
            stats = orch.get_stats()
            await orch.close()
            return stats

        stats = asyncio.run(first_run())
        assert stats.solutions_found == 3
        assert stats.total_addresses == 3
        assert stats.registered_addresses == 3
        assert stats.challenge_id == "abc"
        assert not orch.running
        assert len(ReceiptsJournal(fast_config.storage_dir).read_receipts()) == 3

        api2 = FakeApi([active(make_challenge("abc"))])
        engine2 = FakeHashEngine(winner=lambda p: True)
        restarted = orchestrator(fast_config, api=api2, engine=engine2)

        async def second_run():
            await restarted.start("secret")
            await wait_for(lambda: restarted._mining_task is not None and restarted._mining_task.done())
            await restarted.close()

        asyncio.run(second_run())
        assert api2.submissions == []
        assert engine2.batches == []
