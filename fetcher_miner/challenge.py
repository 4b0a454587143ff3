from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .mining.errors import ChallengeFetchFailed


class ChallengePhase(str, Enum):
    BEFORE = "before"
    ACTIVE = "active"
    AFTER = "after"


@dataclass(frozen=True)
class Challenge:
    """
    Immutable snapshot of a published challenge.

    Attributes:
        challenge_id: Unique identifier; a new id supersedes the previous challenge.
        difficulty: Hex target whose leading zero bits give the required bit count.
        no_pre_mine: Seed handed to the compute-context initializer.
        latest_submission: Deadline timestamp (informational; part of the preimage).
        no_pre_mine_hour: Hour bucket of the seed (part of the preimage).
        starts_at: When the challenge opened, if reported.
        day: Campaign day number, if reported.
        challenge_number: Sequence number within the day, if reported.
    """

    challenge_id: str
    difficulty: str
    no_pre_mine: str
    latest_submission: str = ""
    no_pre_mine_hour: str = ""
    starts_at: Optional[str] = None
    day: Optional[int] = None
    challenge_number: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Challenge":
        try:
            challenge_id = str(data["challenge_id"])
            difficulty = str(data["difficulty"])
        except KeyError as exc:
            raise ChallengeFetchFailed(
                message=f"challenge payload missing {exc.args[0]!r}",
                context={"keys": sorted(data)},
            ) from None
        return cls(
            challenge_id=challenge_id,
            difficulty=difficulty,
            no_pre_mine=str(data.get("no_pre_mine") or ""),
            latest_submission=str(data.get("latest_submission") or ""),
            no_pre_mine_hour=str(data.get("no_pre_mine_hour") or ""),
            starts_at=data.get("starts_at"),
            day=data.get("day"),
            challenge_number=data.get("challenge_number"),
        )


@dataclass(frozen=True)
class ChallengeResponse:
    """Decoded body of ``GET /challenge``."""

    code: ChallengePhase
    challenge: Optional[Challenge] = None
    starts_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "ChallengeResponse":
        if not isinstance(data, dict):
            raise ChallengeFetchFailed(message="challenge response is not an object")
        try:
            code = ChallengePhase(data.get("code"))
        except ValueError:
            raise ChallengeFetchFailed(
                message=f"unknown challenge code {data.get('code')!r}"
            ) from None
        raw = data.get("challenge")
        challenge = Challenge.from_dict(raw) if isinstance(raw, dict) else None
        starts_at = data.get("starts_at")
        if starts_at is None and challenge is not None:
            starts_at = challenge.starts_at
        return cls(code=code, challenge=challenge, starts_at=starts_at)
