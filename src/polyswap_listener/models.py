from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from polyswap_listener.config import ZERO_BYTES32


class OrderStatus(str, Enum):
    DRAFT = "draft"
    LIVE = "live"
    FILLED = "filled"
    CANCELED = "canceled"


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def to_hex(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    raw = str(value).strip().lower()
    return raw if raw.startswith("0x") else "0x" + raw


def hex_to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if value is None:
        return b""
    raw = str(value).strip()
    if raw.startswith(("0x", "0X")):
        raw = raw[2:]
    return bytes.fromhex(raw)


def normalize_address(address: Any) -> str:
    raw = to_hex(address)
    if len(raw) != 42:
        raise ValueError(f"invalid address: {address!r}")
    int(raw[2:], 16)
    return raw


def normalize_bytes32(value: Any) -> str:
    if value is None or value == "":
        return ZERO_BYTES32
    raw = to_hex(value)
    if len(raw) != 66:
        raise ValueError(f"expected 32-byte hex value, got {value!r}")
    return raw


def address_from_topic(topic: Any) -> str:
    raw = hex_to_bytes(topic)
    if len(raw) != 32:
        raise ValueError("indexed address topic must be 32 bytes")
    return "0x" + raw[12:].hex()


@dataclass(frozen=True)
class OrderParams:
    """Economic parameters carried in a conditional order's static input."""

    sell_token: str
    buy_token: str
    receiver: str
    sell_amount: int
    min_buy_amount: int
    start_time: int
    end_time: int
    polymarket_order_hash: str
    app_data: str = ZERO_BYTES32


@dataclass(frozen=True)
class ConditionalOrderParams:
    handler: str
    salt: str
    static_input: bytes


@dataclass(frozen=True)
class FillDetail:
    transaction_hash: str
    block_number: int
    log_index: int
    actual_sell_amount: str | None = None
    actual_buy_amount: str | None = None
    fee_amount: str | None = None
    filled_at: str = field(default_factory=utc_now_iso)


@dataclass
class Order:
    id: int | None
    owner: str
    handler: str
    sell_token: str
    buy_token: str
    sell_amount: str
    min_buy_amount: str
    start_time: int
    end_time: int
    polymarket_order_hash: str
    app_data: str
    status: OrderStatus
    order_hash: str | None = None
    order_uid: str | None = None
    receiver: str | None = None
    market_id: str | None = None
    outcome_selected: int | None = None
    bet_percentage: str | None = None
    block_number: int | None = None
    transaction_hash: str | None = None
    log_index: int | None = None
    filled_at: str | None = None
    fill_transaction_hash: str | None = None
    fill_block_number: int | None = None
    fill_log_index: int | None = None
    actual_sell_amount: str | None = None
    actual_buy_amount: str | None = None
    fee_amount: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def order_params(self) -> OrderParams:
        return OrderParams(
            sell_token=self.sell_token,
            buy_token=self.buy_token,
            receiver=self.receiver or self.owner,
            sell_amount=int(self.sell_amount),
            min_buy_amount=int(self.min_buy_amount),
            start_time=int(self.start_time),
            end_time=int(self.end_time),
            polymarket_order_hash=self.polymarket_order_hash,
            app_data=self.app_data or ZERO_BYTES32,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


@dataclass(frozen=True)
class RawLog:
    address: str
    topics: tuple[bytes, ...]
    data: bytes
    block_number: int
    transaction_hash: str
    log_index: int

    @classmethod
    def from_web3(cls, entry: Any) -> "RawLog":
        getter = entry.get if isinstance(entry, dict) else lambda key: getattr(entry, key, None)
        return cls(
            address=to_hex(getter("address")),
            topics=tuple(hex_to_bytes(topic) for topic in (getter("topics") or [])),
            data=hex_to_bytes(getter("data")),
            block_number=int(getter("blockNumber") or 0),
            transaction_hash=to_hex(getter("transactionHash")),
            log_index=int(getter("logIndex") or 0),
        )

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class OrderCreated:
    owner: str
    handler: str
    salt: str
    static_input: bytes
    params: OrderParams
    order_hash: str
    block_number: int
    transaction_hash: str
    log_index: int


@dataclass(frozen=True)
class Trade:
    owner: str
    sell_token: str
    buy_token: str
    sell_amount: int
    buy_amount: int
    fee_amount: int
    order_uid: str
    block_number: int
    transaction_hash: str
    log_index: int


@dataclass(frozen=True)
class OrderInvalidated:
    owner: str
    order_uid: str
    block_number: int
    transaction_hash: str
    log_index: int


@dataclass(frozen=True)
class DecodeError:
    reason: str
    block_number: int
    transaction_hash: str
    log_index: int


@dataclass(frozen=True)
class IgnoredEvent:
    """A well-formed log that belongs to another integration."""

    reason: str
    block_number: int
    log_index: int


ChainEvent = Union[OrderCreated, Trade, OrderInvalidated]
DecodedLog = Union[OrderCreated, Trade, OrderInvalidated, DecodeError, IgnoredEvent]


@dataclass(frozen=True)
class TransactionRequest:
    to: str
    data: str
    value: str = "0"

    def to_dict(self) -> dict[str, str]:
        return {"to": self.to, "data": self.data, "value": self.value}

    @property
    def selector(self) -> str:
        return self.data[:10].lower()


@dataclass(frozen=True)
class BlockRange:
    from_block: int
    to_block: int

    def __str__(self) -> str:
        return f"{self.from_block}-{self.to_block}"


class RangeStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    # Not an error: the range is ahead of the node or the listener stopped mid-range.
    DEFERRED = "deferred"
    # The node could not serve the range; retried after reconnect, never dead-lettered.
    UNAVAILABLE = "unavailable"


@dataclass
class RangeOutcome:
    block_range: BlockRange
    status: RangeStatus
    events: int = 0
    decode_errors: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == RangeStatus.OK


@dataclass
class BackfillResult:
    start_block: int
    head_block: int
    succeeded: list[BlockRange] = field(default_factory=list)
    failed: list[BlockRange] = field(default_factory=list)
    dead_lettered: list[BlockRange] = field(default_factory=list)
    cursor: int = 0

    @property
    def complete(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_block": self.start_block,
            "head_block": self.head_block,
            "cursor": self.cursor,
            "succeeded": [str(r) for r in self.succeeded],
            "failed": [str(r) for r in self.failed],
            "dead_lettered": [str(r) for r in self.dead_lettered],
        }
