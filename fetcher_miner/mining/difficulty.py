from __future__ import annotations

"""
Difficulty predicate for challenge digests.

A challenge publishes its target as a hex string (e.g. ``"000FFFFF"``). The
number of leading zero bits of that string, K, is the number of leading zero
bits a digest must have to qualify:

    accept(digest)  iff  the first K // 4 nibbles are '0'
                         and, when K % 4 != 0, the next nibble < 2^(4 - K % 4)

This is the nibble-wise form of "first ceil(K/4) nibbles zero, with the high
bits of the last one checked when K is not a multiple of 4". Everything works
on hex strings because that is what the hash service returns.
"""

from typing import Union

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def _strip_prefix(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value


def leading_zero_bits(hex_value: str) -> int:
    """Count the leading zero bits of a hex string (4 bits per nibble)."""
    bits = 0
    for ch in _strip_prefix(hex_value):
        if ch not in _HEX_DIGITS:
            raise ValueError(f"not a hex string: {hex_value!r}")
        nibble = int(ch, 16)
        if nibble == 0:
            bits += 4
            continue
        # 4 - bit_length gives the zero bits at the top of a non-zero nibble
        return bits + (4 - nibble.bit_length())
    return bits


def difficulty_zero_bits(difficulty: Union[str, int]) -> int:
    """
    Required leading zero bits K for a challenge difficulty.

    Accepts the hex-string form used on the wire, or an int already holding K.
    """
    if isinstance(difficulty, int):
        if difficulty < 0:
            raise ValueError("difficulty bits must be non-negative")
        return difficulty
    return leading_zero_bits(difficulty)


def matches_difficulty(digest_hex: str, difficulty: Union[str, int]) -> bool:
    """Return True when ``digest_hex`` has at least K leading zero bits."""
    k = difficulty_zero_bits(difficulty)
    digest = _strip_prefix(digest_hex).lower()
    full, partial = divmod(k, 4)
    need = full + (1 if partial else 0)
    if len(digest) < need:
        return False
    if any(ch != "0" for ch in digest[:full]):
        return False
    if partial:
        try:
            nibble = int(digest[full], 16)
        except ValueError:
            return False
        return nibble < (1 << (4 - partial))
    return True


__all__ = ["leading_zero_bits", "difficulty_zero_bits", "matches_difficulty"]
