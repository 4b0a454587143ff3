from __future__ import annotations

from typing import Protocol

from .nonce import NONCE_HEX_LEN


class ChallengeFields(Protocol):
    challenge_id: str
    difficulty: str
    no_pre_mine: str
    latest_submission: str
    no_pre_mine_hour: str


def build_preimage(nonce: str, address: str, challenge: ChallengeFields) -> str:
    """
    Construct the exact string the hash service digests for one candidate.

    preimage := nonce || address || challenge_id || difficulty
                || no_pre_mine || latest_submission || no_pre_mine_hour
    """
    if len(nonce) != NONCE_HEX_LEN:
        raise ValueError(f"nonce must be {NONCE_HEX_LEN} hex characters")
    return (
        nonce
        + address
        + challenge.challenge_id
        + challenge.difficulty
        + challenge.no_pre_mine
        + challenge.latest_submission
        + challenge.no_pre_mine_hour
    )


__all__ = ["ChallengeFields", "build_preimage"]
