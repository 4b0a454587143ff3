import pytest

from fetcher_miner.mining.difficulty import (
    difficulty_zero_bits,
    leading_zero_bits,
    matches_difficulty,
)


class TestLeadingZeroBits:
    """Zero-bit count of hex difficulty strings"""

    @pytest.mark.parametrize(
        "value,bits",
        [
            ("000FFFFF", 12),
            ("0FFF", 4),
            ("1FFF", 3),
            ("7fff", 1),
            ("0007FFFF", 13),
            ("0001", 15),
            ("0000", 16),
            ("0x00ff", 8),
        ],
    )
    def test_counts(self, value, bits):
        assert leading_zero_bits(value) == bits

    def test_invalid_hex(self):
        with pytest.raises(ValueError):
            leading_zero_bits("00zz")

    def test_int_difficulty_is_bit_count(self):
        assert difficulty_zero_bits(20) == 20
        with pytest.raises(ValueError):
            difficulty_zero_bits(-1)


class TestMatchesDifficulty:
    """Nibble-wise acceptance predicate"""

    def test_whole_nibbles(self):
        assert matches_difficulty("000abc" + "f" * 58, "000FFFFF")
        assert not matches_difficulty("001abc" + "f" * 58, "000FFFFF")

    def test_partial_nibble_one_bit(self):
        # K = 13: three zero nibbles then a nibble below 8
        assert matches_difficulty("0007" + "f" * 60, "0007FFFF")
        assert matches_difficulty("0001" + "f" * 60, "0007FFFF")
        assert not matches_difficulty("0008" + "f" * 60, "0007FFFF")

    def test_partial_nibble_three_bits(self):
        # K = 15: next nibble must be 0 or 1
        assert matches_difficulty("0001" + "f" * 60, "0001")
        assert not matches_difficulty("0002" + "f" * 60, "0001")

    def test_zero_difficulty_accepts_everything(self):
        assert matches_difficulty("ffff", "ffff")

    def test_uppercase_digest(self):
        assert matches_difficulty("000ABC", "000FFFFF")

    def test_short_digest(self):
        assert not matches_difficulty("00", "000FFFFF")

    def test_non_hex_partial_nibble(self):
        assert not matches_difficulty("000z", "0007")
