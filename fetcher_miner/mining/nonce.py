from __future__ import annotations

import secrets

# 64-bit nonces rendered as fixed-width lowercase hex.
NONCE_BYTES = 8
NONCE_HEX_LEN = NONCE_BYTES * 2
UINT64_MAX = (1 << 64) - 1


def generate_nonce(worker_id: int = 0) -> str:
    """
    Draw a random 64-bit nonce and render it as 16 lowercase hex characters.

    The first byte carries ``worker_id & 0xFF`` so concurrent workers explore
    disjoint slices of the nonce space; the remaining 7 bytes are random.
    """
    raw = bytes([worker_id & 0xFF]) + secrets.token_bytes(NONCE_BYTES - 1)
    nonce = raw.hex()
    if len(nonce) != NONCE_HEX_LEN:
        raise ValueError(
            f"generated nonce has invalid length: {len(nonce)}, expected {NONCE_HEX_LEN}"
        )
    return nonce


def number_to_nonce(value: int) -> str:
    """Encode an integer in [0, 2^64) as a zero-padded 16-char hex nonce."""
    if value < 0 or value > UINT64_MAX:
        raise ValueError("nonce must fit in 64 unsigned bits")
    return f"{value:016x}"


def nonce_to_number(nonce: str) -> int:
    if len(nonce) != NONCE_HEX_LEN:
        raise ValueError(f"nonce must be {NONCE_HEX_LEN} hex characters")
    try:
        return int(nonce, 16)
    except ValueError:
        raise ValueError(f"nonce is not hex: {nonce!r}") from None


__all__ = [
    "NONCE_HEX_LEN",
    "generate_nonce",
    "number_to_nonce",
    "nonce_to_number",
]
