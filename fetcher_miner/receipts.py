from __future__ import annotations

import json
import logging
import os
import pathlib
import threading
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

log = logging.getLogger("fetcher_miner.receipts")

JSON = Dict[str, Any]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class SolutionReceipt:
    """A solution the remote service accepted."""

    ts: str
    address: str
    challenge_id: str
    nonce: str
    hash: str
    crypto_receipt: Optional[Any] = None
    is_dev_fee: bool = False

    @classmethod
    def from_dict(cls, data: JSON) -> "SolutionReceipt":
        return cls(
            ts=str(data.get("ts") or ""),
            address=str(data["address"]),
            challenge_id=str(data["challenge_id"]),
            nonce=str(data.get("nonce") or ""),
            hash=str(data.get("hash") or ""),
            crypto_receipt=data.get("crypto_receipt"),
            is_dev_fee=bool(data.get("is_dev_fee", data.get("isDevFee", False))),
        )


@dataclass(frozen=True)
class ErrorReceipt:
    """A submission attempt that did not end in acceptance."""

    ts: str
    address: str
    challenge_id: str
    nonce: str
    hash: str
    error: str
    status: Optional[int] = None
    response: Optional[Any] = None
    is_dev_fee: bool = False

    @classmethod
    def from_dict(cls, data: JSON) -> "ErrorReceipt":
        return cls(
            ts=str(data.get("ts") or ""),
            address=str(data["address"]),
            challenge_id=str(data["challenge_id"]),
            nonce=str(data.get("nonce") or ""),
            hash=str(data.get("hash") or ""),
            error=str(data.get("error") or ""),
            status=data.get("status"),
            response=data.get("response"),
            is_dev_fee=bool(data.get("is_dev_fee", False)),
        )


class ReceiptsJournal:
    """
    Append-only JSON-lines journal of submission outcomes.

    Accepted solutions go to ``receipts.jsonl``, failed attempts to
    ``errors.jsonl``. Each append is flushed and fsynced so a crash never loses
    an acknowledged receipt. Appends block on that fsync and are safe to run
    from worker threads; async callers hand them to ``asyncio.to_thread``.
    """

    def __init__(self, directory: os.PathLike | str) -> None:
        self.directory = pathlib.Path(directory)
        self.receipts_path = self.directory / "receipts.jsonl"
        self.errors_path = self.directory / "errors.jsonl"
        self._lock = threading.Lock()

    def _append(self, path: pathlib.Path, record: JSON) -> None:
        line = json.dumps(record, separators=(",", ":"), sort_keys=True)
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
                os.fsync(f.fileno())

    def _read(self, path: pathlib.Path) -> List[JSON]:
        if not path.exists():
            return []
        out: List[JSON] = []
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError as exc:
                    log.warning("Skipping unreadable journal line %s:%d (%s)", path.name, lineno, exc)
                    continue
                if isinstance(obj, dict):
                    out.append(obj)
        return out

    def log_receipt(self, receipt: SolutionReceipt) -> None:
        self._append(self.receipts_path, asdict(receipt))

    def log_error(self, receipt: ErrorReceipt) -> None:
        self._append(self.errors_path, asdict(receipt))

    def read_receipts(self) -> List[SolutionReceipt]:
        out: List[SolutionReceipt] = []
        for obj in self._read(self.receipts_path):
            try:
                out.append(SolutionReceipt.from_dict(obj))
            except KeyError as exc:
                log.warning("Skipping receipt without %s: %s", exc, obj)
        return out

    def read_errors(self) -> List[ErrorReceipt]:
        out: List[ErrorReceipt] = []
        for obj in self._read(self.errors_path):
            try:
                out.append(ErrorReceipt.from_dict(obj))
            except KeyError as exc:
                log.warning("Skipping error receipt without %s: %s", exc, obj)
        return out


# ---------------------- Dedup / resume ----------------------


@dataclass
class DedupState:
    """
    In-memory dedup tables rebuilt from the journal at startup.

    Both tables only ever grow; concurrent miners add to them from the event
    loop thread and a duplicate add is a no-op.
    """

    submitted_hashes: Set[str] = field(default_factory=set)
    solved: Dict[str, Set[str]] = field(default_factory=dict)
    user_solutions: int = 0
    fee_solutions: int = 0

    @classmethod
    def from_receipts(
        cls, receipts: List[SolutionReceipt], errors: Iterable[ErrorReceipt] = ()
    ) -> "DedupState":
        """Failed attempts block their pair too, but only accepted ones count."""
        state = cls()
        user = [r for r in receipts if not r.is_dev_fee]
        fee = [r for r in receipts if r.is_dev_fee]
        for receipt in receipts:
            if receipt.hash:
                state.submitted_hashes.add(receipt.hash)
            state.mark_solved(receipt.address, receipt.challenge_id)
        for err in errors:
            if err.hash:
                state.submitted_hashes.add(err.hash)
            state.mark_solved(err.address, err.challenge_id)
        state.user_solutions = len(user)
        state.fee_solutions = len(fee)
        return state

    @classmethod
    def load(cls, journal: ReceiptsJournal) -> "DedupState":
        receipts = journal.read_receipts()
        errors = journal.read_errors()
        state = cls.from_receipts(receipts, errors)
        log.info(
            "Loaded %d receipts (%d failed attempts): %d user, %d fee, %d hashes, %d addresses with solved challenges",
            len(receipts),
            len(errors),
            state.user_solutions,
            state.fee_solutions,
            len(state.submitted_hashes),
            len(state.solved),
        )
        return state

    def is_submitted(self, digest: str) -> bool:
        return digest in self.submitted_hashes

    def mark_submitted(self, digest: str) -> None:
        self.submitted_hashes.add(digest)

    def is_solved(self, address: str, challenge_id: str) -> bool:
        return challenge_id in self.solved.get(address, ())

    def mark_solved(self, address: str, challenge_id: str) -> None:
        self.solved.setdefault(address, set()).add(challenge_id)


# ---------------------- History summary ----------------------


@dataclass(frozen=True)
class JournalSummary:
    total: int
    user: int
    fee: int
    errors: int
    per_challenge: Dict[str, int]

    @classmethod
    def from_journal(cls, journal: ReceiptsJournal) -> "JournalSummary":
        receipts = journal.read_receipts()
        per_challenge = Counter(r.challenge_id for r in receipts)
        fee = sum(1 for r in receipts if r.is_dev_fee)
        return cls(
            total=len(receipts),
            user=len(receipts) - fee,
            fee=fee,
            errors=len(journal.read_errors()),
            per_challenge=dict(per_challenge),
        )


__all__ = [
    "SolutionReceipt",
    "ErrorReceipt",
    "ReceiptsJournal",
    "DedupState",
    "JournalSummary",
    "utc_now_iso",
]
