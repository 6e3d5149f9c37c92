"""
Nonce and address helpers for user operations.

An ERC-4337 nonce is a uint256 whose upper 192 bits select a nonce channel
(the key) and whose lower 64 bits count within that channel (the value).
"""

from __future__ import annotations

from typing import Callable, Tuple, Union

from eth_utils import to_checksum_address

from .errors import InvalidNonce


NONCE_VALUE_BITS = 64
NONCE_KEY_BITS = 192
_NONCE_VALUE_MASK = (1 << NONCE_VALUE_BITS) - 1

RawNonce = Union[int, str]
NonceCodec = Callable[[RawNonce], Tuple[int, int]]


def parse_nonce(raw: RawNonce) -> int:
    if isinstance(raw, bool):
        raise ValueError("Nonce must be an integer, not a bool")
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str):
        text = raw.strip()
        if not text:
            raise ValueError("Nonce is empty")
        value = int(text, 16) if text.lower().startswith("0x") else int(text)
    else:
        raise ValueError(f"Unsupported nonce type: {type(raw).__name__}")
    if value < 0:
        raise ValueError("Nonce must be non-negative")
    return value


def split_nonce(raw: RawNonce) -> Tuple[int, int]:
    """Split a raw nonce into ``(nonce_key, nonce_value)``."""
    nonce = parse_nonce(raw)
    return nonce >> NONCE_VALUE_BITS, nonce & _NONCE_VALUE_MASK


def validate_nonce_value(nonce_value: int, max_digits: int = 30) -> str:
    """Return the decimal form of ``nonce_value``, rejecting oversized values."""
    text = str(nonce_value)
    if len(text) > max_digits:
        raise InvalidNonce(nonce_value, max_digits)
    return text


def normalize_address(address: str) -> str:
    return to_checksum_address(address)


def format_nonce_key(nonce_key: int) -> str:
    return hex(nonce_key)
