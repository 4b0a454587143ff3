from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import IntEnum
from typing import Any, Dict, Optional


class MiningErrorCode(IntEnum):
    """Stable, machine-consumable error codes for miner flows."""

    MINER_ERROR = 1000
    CHALLENGE_FETCH_FAILED = 1001
    SUBMIT_REJECTED = 1002
    HASH_SERVICE_ERROR = 1003
    CONTEXT_INIT_TIMEOUT = 1004
    REGISTRATION_FAILED = 1005
    CONFIGURATION_ERROR = 1006


@dataclass
class MinerError(Exception):
    """
    Base class for miner-facing errors.

    Attributes
    ----------
    message : str
        Human-friendly explanation (safe to log).
    code : MiningErrorCode
        Programmatic code stable across releases.
    retryable : bool
        Whether an automated retry has a reasonable chance to succeed *without*
        changing inputs (e.g., re-sending the exact same request).
    context : dict
        Small, JSON-serializable context (non-sensitive) for diagnostics.
    action : Optional[str]
        One-word hint for orchestrators (e.g., "backoff", "wait_next_poll").
    """

    message: str
    code: MiningErrorCode = MiningErrorCode.MINER_ERROR
    retryable: bool = False
    context: Dict[str, Any] = field(default_factory=dict)
    action: Optional[str] = None

    def __str__(self) -> str:  # pragma: no cover - trivial
        base = f"[{self.code}] {self.message}"
        if self.action:
            base += f" (action={self.action})"
        if self.context:
            base += f" ctx={self.context}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["code"] = int(self.code)
        return d


@dataclass
class ChallengeFetchFailed(MinerError):
    """The challenge endpoint could not be reached or returned garbage."""

    message: str = "failed to fetch challenge state"
    code: MiningErrorCode = MiningErrorCode.CHALLENGE_FETCH_FAILED
    retryable: bool = True
    action: str = "wait_next_poll"


@dataclass
class HashServiceError(MinerError):
    """
    The local hash compute service failed a call or answered with a payload
    that does not line up with the request (wrong count, missing field).
    """

    message: str = "hash service call failed"
    code: MiningErrorCode = MiningErrorCode.HASH_SERVICE_ERROR
    retryable: bool = True
    action: str = "backoff"


@dataclass
class ContextInitTimeout(MinerError):
    """
    The compute context (ROM) did not report ready within the allowed wait.
    Fatal to the current challenge cycle only; the next poll tries again.
    """

    waited: float = 0.0
    message: str = "compute context initialization timeout"
    code: MiningErrorCode = MiningErrorCode.CONTEXT_INIT_TIMEOUT
    retryable: bool = True
    action: str = "wait_next_poll"

    def __post_init__(self) -> None:
        self.context.setdefault("waited", round(self.waited, 3))


@dataclass
class SubmitRejected(MinerError):
    """
    The remote service answered a solution submission with a non-2xx status.
    Rejections are final for that nonce: the same payload is never re-sent.
    """

    message: str = ""
    status: int = 0
    details: Optional[str] = None

    def __post_init__(self) -> None:
        self.code = MiningErrorCode.SUBMIT_REJECTED
        self.retryable = False
        if self.status == 409:
            self.action = "dedupe"
        elif 400 <= self.status < 500:
            self.action = "inspect"
        else:
            self.action = "backoff"

        self.context.setdefault("status", self.status)
        if self.details:
            self.context.setdefault("details", self.details)

        if not getattr(self, "message", None):
            self.message = f"submit rejected: HTTP {self.status}"

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["status"] = self.status
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class RegistrationFailed(MinerError):
    """Terms fetch, signing or the register call failed for one identity."""

    address: str = ""
    message: str = "address registration failed"
    code: MiningErrorCode = MiningErrorCode.REGISTRATION_FAILED
    retryable: bool = True
    action: str = "backoff"

    def __post_init__(self) -> None:
        if self.address:
            self.context.setdefault("address", self.address)


@dataclass
class ConfigurationError(MinerError):
    """Missing credential, unloadable wallet or invalid settings."""

    message: str = "invalid configuration"
    code: MiningErrorCode = MiningErrorCode.CONFIGURATION_ERROR
    retryable: bool = False
    action: str = "fix_config"


# Helper: map arbitrary exceptions into MinerError (edge-safe)
def normalize_exc(exc: BaseException) -> MinerError:
    if isinstance(exc, MinerError):
        return exc
    # Fallback generic wrapper
    return MinerError(
        message=str(exc) or type(exc).__name__,
        code=MiningErrorCode.MINER_ERROR,
        retryable=False,
        context={"type": type(exc).__name__},
    )


__all__ = [
    "MiningErrorCode",
    "MinerError",
    "ChallengeFetchFailed",
    "HashServiceError",
    "ContextInitTimeout",
    "SubmitRejected",
    "RegistrationFailed",
    "ConfigurationError",
    "normalize_exc",
]
