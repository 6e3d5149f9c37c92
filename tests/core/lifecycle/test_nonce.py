"""
Tests for nonce splitting and address normalisation.
"""

import pytest

from userops.core.lifecycle import InvalidNonce, normalize_address, split_nonce, validate_nonce_value
from userops.core.lifecycle.nonce import format_nonce_key, parse_nonce


def test_split_nonce_hex_string() -> None:
    key, value = split_nonce("0x" + "00" * 23 + "05" + "0000000000000003")

    assert key == 5
    assert value == 3


def test_split_nonce_int_and_decimal_agree() -> None:
    raw = (12345 << 64) | 678
    assert split_nonce(raw) == split_nonce(str(raw)) == split_nonce(hex(raw))
    assert split_nonce(raw) == (12345, 678)


def test_split_nonce_value_is_lower_64_bits() -> None:
    key, value = split_nonce((1 << 64) - 1)

    assert key == 0
    assert value == (1 << 64) - 1


@pytest.mark.parametrize("raw", ["", "-1", -1, True, 1.5, None, "0xzz"])
def test_parse_nonce_rejects_bad_input(raw) -> None:
    with pytest.raises(ValueError):
        parse_nonce(raw)


def test_validate_nonce_value_boundary() -> None:
    assert validate_nonce_value(int("9" * 30)) == "9" * 30

    with pytest.raises(InvalidNonce) as exc_info:
        validate_nonce_value(10 ** 30)

    assert exc_info.value.context["maxDigits"] == 30


def test_validate_nonce_value_custom_limit() -> None:
    with pytest.raises(InvalidNonce):
        validate_nonce_value(1000, max_digits=3)


def test_normalize_address_checksums() -> None:
    address = normalize_address("0x5ff137d4b0fdcd49dca30c7cf57e578a026d2789")
    assert address == "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"


def test_normalize_address_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        normalize_address("0x1234")


def test_format_nonce_key() -> None:
    assert format_nonce_key(0) == "0x0"
    assert format_nonce_key(255) == "0xff"
