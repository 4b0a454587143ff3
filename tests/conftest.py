import asyncio
import hashlib
from typing import Callable, Dict, List, Optional

import pytest

from fetcher_miner.api_client import SubmitResult
from fetcher_miner.challenge import Challenge, ChallengePhase, ChallengeResponse
from fetcher_miner.config import MinerConfig
from fetcher_miner.events import EventBus
from fetcher_miner.mining.errors import HashServiceError, SubmitRejected
from fetcher_miner.receipts import ReceiptsJournal
from fetcher_miner.session import MiningSession
from fetcher_miner.wallet import Identity

# Four leading zero bits: a digest qualifies iff it starts with "0".
EASY_DIFFICULTY = "0fffffff"


def make_challenge(challenge_id: str = "abc", difficulty: str = EASY_DIFFICULTY) -> Challenge:
    return Challenge(
        challenge_id=challenge_id,
        difficulty=difficulty,
        no_pre_mine="seed-" + challenge_id,
        latest_submission="2025-11-01T00:00:00Z",
        no_pre_mine_hour="12",
    )


def active(challenge: Challenge) -> ChallengeResponse:
    return ChallengeResponse(code=ChallengePhase.ACTIVE, challenge=challenge)


def digest_of(preimage: str, *, winning: bool) -> str:
    """Deterministic 64-char digest, forced to qualify or not for EASY_DIFFICULTY."""
    body = hashlib.sha256(preimage.encode()).hexdigest()[1:]
    return ("0" if winning else "f") + body


class FakeHashEngine:
    """In-memory hash service; ``winner`` decides which preimages qualify."""

    def __init__(self, winner: Optional[Callable[[str], bool]] = None, *, ready_after: int = 0):
        self.winner = winner or (lambda preimage: False)
        self.ready_after = ready_after
        self.init_calls: List[str] = []
        self.batches: List[List[str]] = []
        self.probes = 0
        self.fail_next = 0
        self.on_batch: Optional[Callable[[List[str]], None]] = None

    async def init_rom(self, no_pre_mine: str) -> None:
        self.init_calls.append(no_pre_mine)
        self.probes = 0

    async def is_rom_ready(self) -> bool:
        self.probes += 1
        return self.ready_after >= 0 and self.probes > self.ready_after

    async def hash_batch(self, preimages: List[str]) -> List[str]:
        await asyncio.sleep(0)
        self.batches.append(list(preimages))
        if self.on_batch is not None:
            self.on_batch(list(preimages))
        if self.fail_next:
            self.fail_next -= 1
            raise HashServiceError(message="boom")
        return [digest_of(p, winning=self.winner(p)) for p in preimages]


class FakeApi:
    """Challenge API double recording every submission that reaches it."""

    def __init__(self, responses: Optional[List[object]] = None):
        self.responses = list(responses or [])
        self.submissions: List[tuple] = []
        self.registered: List[str] = []
        self.reject_status: Optional[int] = None
        self.transport_error: Optional[BaseException] = None
        self.fail_register: set = set()

    async def fetch_challenge(self) -> ChallengeResponse:
        await asyncio.sleep(0)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, BaseException):
            raise item
        return item

    async def fetch_terms(self) -> str:
        return "I agree to the terms"

    async def register(self, address: str, signature: str, public_key: str) -> Dict:
        if address in self.fail_register:
            raise RuntimeError("register refused")
        self.registered.append(address)
        return {"ok": True}

    async def submit_solution(self, address: str, challenge_id: str, nonce: str) -> SubmitResult:
        await asyncio.sleep(0)
        self.submissions.append((address, challenge_id, nonce))
        if self.transport_error is not None:
            raise self.transport_error
        if self.reject_status is not None:
            raise SubmitRejected(
                message=f"server rejected solution: {self.reject_status}",
                status=self.reject_status,
                details="Solution already exists",
                context={"response": {"message": "Solution already exists"}},
            )
        return SubmitResult(status=201, data={"crypto_receipt": {"sig": nonce}})


class FakeWallet:
    def __init__(self, count: int = 3, *, registered: bool = True):
        self.identities = [
            Identity(index=i, address=f"addr1user{i:04d}", public_key=f"pk{i}", registered=registered)
            for i in range(count)
        ]
        self.signed: List[int] = []

    async def load(self, credential: str) -> List[Identity]:
        if credential != "secret":
            raise ValueError("wrong password")
        return self.identities

    async def sign_message(self, index: int, message: str) -> str:
        self.signed.append(index)
        return f"sig{index}"

    def mark_registered(self, index: int) -> None:
        self.identities[index].registered = True


class FakeFeeManager:
    def __init__(self, ratio: int = 25, address: str = "addr1feerecipient"):
        self.ratio = ratio
        self.address = address
        self.total_fee_solutions = 0
        self.address_calls = 0

    @property
    def enabled(self) -> bool:
        return self.ratio > 0

    def record_fee_solution(self) -> None:
        self.total_fee_solutions += 1

    async def get_address(self) -> str:
        self.address_calls += 1
        return self.address

    async def close(self) -> None:
        pass


@pytest.fixture
def journal(tmp_path) -> ReceiptsJournal:
    return ReceiptsJournal(tmp_path / "storage")


@pytest.fixture
def bus() -> EventBus:
    return EventBus(maxsize=10_000)


@pytest.fixture
def session() -> MiningSession:
    s = MiningSession(running=True)
    s.challenge = make_challenge("abc")
    return s


@pytest.fixture
def fast_config(tmp_path) -> MinerConfig:
    return MinerConfig(
        poll_interval=0.01,
        batch_size=8,
        worker_threads=2,
        rom_max_wait=0.2,
        rom_poll_interval=0.01,
        cancel_grace=0.01,
        registration_delay=0.0,
        storage_dir=tmp_path / "storage",
    )
