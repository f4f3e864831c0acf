from __future__ import annotations

import logging
from typing import Any

from eth_abi.packed import encode_packed

from polyswap_listener.contracts import GET_ORDER_HASH
from polyswap_listener.models import OrderParams, hex_to_bytes, normalize_address, to_hex

LOGGER = logging.getLogger("polyswap_listener")

ORDER_UID_LENGTH = 56
MAX_VALID_TO = (1 << 32) - 1


class OrderHashError(RuntimeError):
    pass


def compute_order_uid(order_hash: str | bytes, owner: str, valid_to: int) -> str:
    """Pack ``order_hash || owner || validTo`` into the 56-byte settlement UID."""
    hash_bytes = hex_to_bytes(order_hash)
    if len(hash_bytes) != 32:
        raise ValueError(f"order hash must be 32 bytes, got {len(hash_bytes)}")
    valid_to = int(valid_to)
    if not 0 <= valid_to <= MAX_VALID_TO:
        raise ValueError(f"validTo out of uint32 range: {valid_to}")
    packed = encode_packed(
        ["bytes32", "address", "uint32"],
        [hash_bytes, normalize_address(owner), valid_to],
    )
    if len(packed) != ORDER_UID_LENGTH:
        raise ValueError(f"packed order uid has {len(packed)} bytes")
    return to_hex(packed)


def split_order_uid(order_uid: str) -> tuple[str, str, int]:
    raw = hex_to_bytes(order_uid)
    if len(raw) != ORDER_UID_LENGTH:
        raise ValueError(f"order uid must be {ORDER_UID_LENGTH} bytes, got {len(raw)}")
    return to_hex(raw[:32]), to_hex(raw[32:52]), int.from_bytes(raw[52:], "big")


def order_params_tuple(params: OrderParams) -> tuple[Any, ...]:
    return (
        normalize_address(params.sell_token),
        normalize_address(params.buy_token),
        normalize_address(params.receiver),
        int(params.sell_amount),
        int(params.min_buy_amount),
        int(params.start_time),
        int(params.end_time),
        hex_to_bytes(params.polymarket_order_hash),
        hex_to_bytes(params.app_data),
    )


class OrderUidCalculator:
    """Order hash via the on-chain calculator contract, UID by packing."""

    def __init__(self, provider, calculator_address: str) -> None:
        self.provider = provider
        self.calculator_address = calculator_address

    def compute_order_hash(self, params: OrderParams) -> str:
        try:
            calldata = GET_ORDER_HASH.encode(order_params_tuple(params))
        except (TypeError, ValueError) as exc:
            raise OrderHashError(f"cannot encode order params: {exc}") from exc
        try:
            result = self.provider.call(self.calculator_address, calldata)
        except Exception as exc:
            raise OrderHashError(f"getOrderHash call failed: {exc}") from exc
        if len(result) < 32:
            raise OrderHashError(f"getOrderHash returned {len(result)} bytes")
        (order_hash,) = GET_ORDER_HASH.decode_output(result)
        return to_hex(order_hash)

    def compute_order_uid(self, order_hash: str, owner: str, valid_to: int) -> str:
        return compute_order_uid(order_hash, owner, valid_to)

    def compute_complete_uid(self, params: OrderParams, owner: str) -> str:
        order_hash = self.compute_order_hash(params)
        uid = compute_order_uid(order_hash, owner, params.end_time)
        LOGGER.debug("order_uid owner=%s valid_to=%s uid=%s", owner, params.end_time, uid)
        return uid
