"""
ABI helpers for contract calls and event logs.

Function and event signatures are canonical Solidity strings such as
"chainPrices(string)" or "Deposited(address,uint256)".
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Sequence, Tuple

from eth_abi import decode, encode
from eth_utils import (
    decode_hex,
    encode_hex,
    event_signature_to_log_topic,
    function_signature_to_4byte_selector,
    to_checksum_address,
)

from vaultsync.core.errors import DecodeError

USDC_DECIMALS = 6
PRICE_DECIMALS = 18


def arg_types(signature: str) -> Tuple[str, ...]:
    """Parse the argument type list out of a canonical signature."""
    start = signature.index("(")
    inner = signature[start + 1:signature.rindex(")")]
    if not inner:
        return ()
    return tuple(t.strip() for t in inner.split(","))


def encode_call(signature: str, args: Sequence[Any] = ()) -> str:
    """Return 0x-prefixed calldata for ``signature`` applied to ``args``."""
    selector = function_signature_to_4byte_selector(signature)
    types = arg_types(signature)
    if len(types) != len(args):
        raise ValueError(f"{signature} expects {len(types)} args, got {len(args)}")
    body = encode(list(types), list(args)) if types else b""
    return encode_hex(selector + body)


def decode_result(types: Sequence[str], data: str) -> Tuple[Any, ...]:
    raw = decode_hex(data) if data else b""
    if not types:
        return ()
    if not raw:
        raise DecodeError(f"empty return data for {list(types)}")
    try:
        return tuple(decode(list(types), raw))
    except Exception as exc:
        raise DecodeError(f"cannot decode {list(types)}: {exc}") from exc


def event_topic(signature: str) -> str:
    return encode_hex(event_signature_to_log_topic(signature))


def address_topic(address: str) -> str:
    """Left-pad an address into a 32-byte topic for indexed filtering."""
    return encode_hex(encode(["address"], [to_checksum_address(address)]))


def decode_topic(abi_type: str, topic: str) -> Any:
    try:
        value = decode([abi_type], decode_hex(topic))[0]
    except Exception as exc:
        raise DecodeError(f"cannot decode topic as {abi_type}: {exc}") from exc
    if abi_type == "address":
        return to_checksum_address(value)
    return value


def from_units(value: int, decimals: int) -> float:
    """Fixed-point integer to float units (formatUnits)."""
    return float(Decimal(int(value)) / (Decimal(10) ** decimals))


def to_units(value: float, decimals: int) -> int:
    """Float units to fixed-point integer (parseUnits)."""
    return int(Decimal(str(value)) * (Decimal(10) ** decimals))
