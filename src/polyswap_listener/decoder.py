from __future__ import annotations

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from polyswap_listener.config import ZERO_BYTES32
from polyswap_listener.contracts import (
    CONDITIONAL_ORDER_CREATED,
    CONDITIONAL_ORDER_TUPLE,
    ORDER_INVALIDATED,
    ORDER_PARAMS_TYPES,
    ORDER_PARAMS_TYPES_V1,
    TRADE,
)
from polyswap_listener.models import (
    DecodedLog,
    DecodeError,
    IgnoredEvent,
    OrderCreated,
    OrderInvalidated,
    OrderParams,
    RawLog,
    Trade,
    address_from_topic,
    hex_to_bytes,
    normalize_address,
    to_hex,
)


class StaticInputError(ValueError):
    pass


def decode_static_input(static_input: bytes) -> OrderParams:
    """Decode a handler static input blob.

    Legacy orders carry eight 32-byte words and no app data; current orders
    carry nine. Any other length is rejected.
    """
    if len(static_input) % 32 != 0:
        raise StaticInputError(f"static input length {len(static_input)} is not word aligned")
    fields = len(static_input) // 32
    if fields == len(ORDER_PARAMS_TYPES):
        types = ORDER_PARAMS_TYPES
    elif fields == len(ORDER_PARAMS_TYPES_V1):
        types = ORDER_PARAMS_TYPES_V1
    else:
        raise StaticInputError(f"static input has {fields} fields, expected 8 or 9")
    try:
        values = abi_decode(list(types), static_input)
    except DecodingError as exc:
        raise StaticInputError(f"static input is malformed: {exc}") from exc

    app_data = to_hex(values[8]) if len(values) == 9 else ZERO_BYTES32
    return OrderParams(
        sell_token=normalize_address(values[0]),
        buy_token=normalize_address(values[1]),
        receiver=normalize_address(values[2]),
        sell_amount=int(values[3]),
        min_buy_amount=int(values[4]),
        start_time=int(values[5]),
        end_time=int(values[6]),
        polymarket_order_hash=to_hex(values[7]),
        app_data=app_data,
    )


def conditional_order_hash(handler: str, salt: str | bytes, static_input: bytes) -> str:
    encoded = abi_encode(
        [CONDITIONAL_ORDER_TUPLE],
        [(normalize_address(handler), hex_to_bytes(salt), bytes(static_input))],
    )
    return to_hex(keccak(encoded))


def decode_log(log: RawLog, handler: str) -> DecodedLog:
    if not log.topics:
        return IgnoredEvent("anonymous log", log.block_number, log.log_index)
    topic = log.topics[0]
    try:
        if topic == CONDITIONAL_ORDER_CREATED.topic:
            return _decode_order_created(log, handler)
        if topic == TRADE.topic:
            return _decode_trade(log)
        if topic == ORDER_INVALIDATED.topic:
            return _decode_order_invalidated(log)
    except (DecodingError, StaticInputError, ValueError) as exc:
        return DecodeError(str(exc), log.block_number, log.transaction_hash, log.log_index)
    return IgnoredEvent("unknown topic " + to_hex(topic), log.block_number, log.log_index)


def _owner(log: RawLog) -> str:
    if len(log.topics) != 2:
        raise ValueError(f"expected 2 topics, got {len(log.topics)}")
    return address_from_topic(log.topics[1])


def _decode_order_created(log: RawLog, handler: str) -> OrderCreated | IgnoredEvent:
    owner = _owner(log)
    (params,) = CONDITIONAL_ORDER_CREATED.decode_data(log.data)
    event_handler, salt, static_input = params
    event_handler = normalize_address(event_handler)
    if event_handler != normalize_address(handler):
        return IgnoredEvent(f"handler {event_handler} not tracked", log.block_number, log.log_index)
    return OrderCreated(
        owner=owner,
        handler=event_handler,
        salt=to_hex(salt),
        static_input=bytes(static_input),
        params=decode_static_input(bytes(static_input)),
        order_hash=conditional_order_hash(event_handler, salt, static_input),
        block_number=log.block_number,
        transaction_hash=log.transaction_hash,
        log_index=log.log_index,
    )


def _decode_trade(log: RawLog) -> Trade:
    owner = _owner(log)
    sell_token, buy_token, sell_amount, buy_amount, fee_amount, order_uid = TRADE.decode_data(log.data)
    return Trade(
        owner=owner,
        sell_token=normalize_address(sell_token),
        buy_token=normalize_address(buy_token),
        sell_amount=int(sell_amount),
        buy_amount=int(buy_amount),
        fee_amount=int(fee_amount),
        order_uid=to_hex(order_uid),
        block_number=log.block_number,
        transaction_hash=log.transaction_hash,
        log_index=log.log_index,
    )


def _decode_order_invalidated(log: RawLog) -> OrderInvalidated:
    owner = _owner(log)
    (order_uid,) = ORDER_INVALIDATED.decode_data(log.data)
    return OrderInvalidated(
        owner=owner,
        order_uid=to_hex(order_uid),
        block_number=log.block_number,
        transaction_hash=log.transaction_hash,
        log_index=log.log_index,
    )
