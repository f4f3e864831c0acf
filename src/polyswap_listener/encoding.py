from __future__ import annotations

import time

from eth_abi import encode as abi_encode
from eth_utils import keccak

from polyswap_listener.config import ListenerConfig
from polyswap_listener.contracts import CREATE_WITH_CONTEXT, ORDER_PARAMS_TYPES, REMOVE
from polyswap_listener.decoder import conditional_order_hash
from polyswap_listener.models import (
    ConditionalOrderParams,
    OrderParams,
    TransactionRequest,
    hex_to_bytes,
    normalize_address,
    normalize_bytes32,
    to_hex,
)
from polyswap_listener.order_uid import order_params_tuple

SALT_DOMAIN = "Polyswap"


def encode_order_params(params: OrderParams) -> bytes:
    """ABI-encode the nine-field static input; app data is always included."""
    return abi_encode(list(ORDER_PARAMS_TYPES), list(order_params_tuple(params)))


def generate_salt(nonce: int | None = None) -> str:
    if nonce is None:
        nonce = time.time_ns()
    return to_hex(keccak(abi_encode(["string", "uint256"], [SALT_DOMAIN, int(nonce)])))


class TransactionEncoder:
    def __init__(self, config: ListenerConfig) -> None:
        self.config = config

    def conditional_order(self, params: OrderParams, salt: str | None = None) -> ConditionalOrderParams:
        return ConditionalOrderParams(
            handler=normalize_address(self.config.handler_address),
            salt=normalize_bytes32(salt) if salt else generate_salt(),
            static_input=encode_order_params(params),
        )

    def order_hash(self, conditional: ConditionalOrderParams) -> str:
        return conditional_order_hash(conditional.handler, conditional.salt, conditional.static_input)

    def build_create_transaction(
        self, params: OrderParams, salt: str | None = None
    ) -> tuple[TransactionRequest, ConditionalOrderParams]:
        conditional = self.conditional_order(params, salt)
        calldata = CREATE_WITH_CONTEXT.encode(
            (conditional.handler, hex_to_bytes(conditional.salt), conditional.static_input),
            normalize_address(self.config.value_factory_address),
            b"",
            True,
        )
        tx = TransactionRequest(
            to=normalize_address(self.config.composable_cow_address),
            data=to_hex(calldata),
            value="0",
        )
        return tx, conditional

    def build_cancel_transaction(self, order_hash: str) -> TransactionRequest:
        calldata = REMOVE.encode(hex_to_bytes(normalize_bytes32(order_hash)))
        return TransactionRequest(
            to=normalize_address(self.config.composable_cow_address),
            data=to_hex(calldata),
            value="0",
        )
