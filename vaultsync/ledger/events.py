"""
Ledger event types and the schemas that decode raw eth_getLogs entries into them.

A schema knows its canonical signature, the emitting contract and which inputs
are indexed (carried in topics) versus ABI-encoded in ``data``. decode() raises
DecodeError for any entry that does not match; callers drop such entries.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from eth_abi import decode
from eth_utils import decode_hex

from vaultsync.core.errors import DecodeError
from vaultsync.ledger.abi import PRICE_DECIMALS, USDC_DECIMALS, decode_topic, event_topic, from_units

MODE_NAMES = {0: "Farming", 1: "Defensive", 2: "Emergency"}


def mode_name(mode: int) -> str:
    return MODE_NAMES.get(int(mode), f"Mode{int(mode)}")


@dataclass(frozen=True)
class DepositEvent:
    account: str
    amount: float
    block_number: int


@dataclass(frozen=True)
class WithdrawEvent:
    account: str
    amount: float
    block_number: int


@dataclass(frozen=True)
class MoveEvent:
    source_chain: str
    dest_chain: str
    amount: float
    block_number: int
    timestamp: int


LedgerEvent = Union[DepositEvent, WithdrawEvent, MoveEvent]


@dataclass(frozen=True)
class ModeChange:
    new_mode: int
    mode_name: str
    price: float
    timestamp: int
    reason: str
    block_number: int
    tx_hash: Optional[str] = None


@dataclass(frozen=True)
class EventInput:
    name: str
    abi_type: str
    indexed: bool = False


def _block_of(raw: Mapping[str, Any]) -> int:
    value = raw.get("blockNumber")
    if value is None:
        raise DecodeError("log entry has no blockNumber")
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


@dataclass(frozen=True)
class EventSchema:
    name: str
    inputs: Tuple[EventInput, ...]
    address: str
    build: Callable[[Dict[str, Any], Mapping[str, Any]], Any]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.abi_type for i in self.inputs)})"

    @property
    def topic0(self) -> str:
        return event_topic(self.signature)

    def decode_args(self, raw: Mapping[str, Any]) -> Dict[str, Any]:
        topics = list(raw.get("topics") or [])
        if not topics or str(topics[0]).lower() != self.topic0.lower():
            raise DecodeError(f"{self.name}: topic0 mismatch")

        indexed = [i for i in self.inputs if i.indexed]
        plain = [i for i in self.inputs if not i.indexed]
        if len(topics) - 1 != len(indexed):
            raise DecodeError(f"{self.name}: expected {len(indexed)} indexed topics, got {len(topics) - 1}")

        args: Dict[str, Any] = {}
        for inp, topic in zip(indexed, topics[1:]):
            args[inp.name] = decode_topic(inp.abi_type, topic)
        try:
            values = decode([i.abi_type for i in plain], decode_hex(raw.get("data") or "0x"))
        except Exception as exc:
            raise DecodeError(f"{self.name}: cannot decode data: {exc}") from exc
        for inp, value in zip(plain, values):
            args[inp.name] = value
        return args

    def decode(self, raw: Mapping[str, Any]) -> Any:
        args = self.decode_args(raw)
        try:
            return self.build(args, raw)
        except DecodeError:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"{self.name}: {exc}") from exc


def _build_deposit(args: Dict[str, Any], raw: Mapping[str, Any]) -> DepositEvent:
    return DepositEvent(
        account=args["user"],
        amount=from_units(args["amount"], USDC_DECIMALS),
        block_number=_block_of(raw),
    )


def _build_withdraw(args: Dict[str, Any], raw: Mapping[str, Any]) -> WithdrawEvent:
    return WithdrawEvent(
        account=args["user"],
        amount=from_units(args["amount"], USDC_DECIMALS),
        block_number=_block_of(raw),
    )


def _build_move(args: Dict[str, Any], raw: Mapping[str, Any]) -> MoveEvent:
    return MoveEvent(
        source_chain=args["sourceChain"],
        dest_chain=args["destChain"],
        amount=from_units(args["amount"], USDC_DECIMALS),
        block_number=_block_of(raw),
        timestamp=int(args["timestamp"]),
    )


def _build_mode_change(args: Dict[str, Any], raw: Mapping[str, Any]) -> ModeChange:
    mode = int(args["newMode"])
    return ModeChange(
        new_mode=mode,
        mode_name=mode_name(mode),
        price=from_units(args["price"], PRICE_DECIMALS),
        timestamp=int(args["timestamp"]),
        reason=args["reason"],
        block_number=_block_of(raw),
        tx_hash=raw.get("transactionHash"),
    )


def deposit_schema(vault_address: str) -> EventSchema:
    return EventSchema(
        name="Deposited",
        inputs=(EventInput("user", "address", indexed=True), EventInput("amount", "uint256")),
        address=vault_address,
        build=_build_deposit,
    )


def withdraw_schema(vault_address: str) -> EventSchema:
    return EventSchema(
        name="Withdrawn",
        inputs=(EventInput("user", "address", indexed=True), EventInput("amount", "uint256")),
        address=vault_address,
        build=_build_withdraw,
    )


def move_schema(cross_chain_address: str) -> EventSchema:
    return EventSchema(
        name="CrossChainMove",
        inputs=(
            EventInput("sourceChain", "string"),
            EventInput("destChain", "string"),
            EventInput("amount", "uint256"),
            EventInput("timestamp", "uint256"),
        ),
        address=cross_chain_address,
        build=_build_move,
    )


def mode_changed_schema(vault_address: str) -> EventSchema:
    return EventSchema(
        name="ModeChanged",
        inputs=(
            EventInput("newMode", "uint256"),
            EventInput("price", "uint256"),
            EventInput("timestamp", "uint256"),
            EventInput("reason", "string"),
        ),
        address=vault_address,
        build=_build_mode_change,
    )


def ledger_schemas(vault_address: str, cross_chain_address: str) -> Sequence[EventSchema]:
    """Deposit, withdraw and move schemas in query order."""
    return (
        deposit_schema(vault_address),
        withdraw_schema(vault_address),
        move_schema(cross_chain_address),
    )
