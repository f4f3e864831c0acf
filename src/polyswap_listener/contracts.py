from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import event_signature_to_log_topic, function_signature_to_4byte_selector

MAX_UINT256 = (1 << 256) - 1

# keccak256("fallback_manager.handler.address")
FALLBACK_HANDLER_STORAGE_SLOT = int(
    "0x6c9a6c4a39284e37ed1cf53d337577d14212a4870fb976a4366c693b939918d5", 16
)

CONDITIONAL_ORDER_TUPLE = "(address,bytes32,bytes)"
ORDER_PARAMS_TYPES_V1 = (
    "address",
    "address",
    "address",
    "uint256",
    "uint256",
    "uint256",
    "uint256",
    "bytes32",
)
ORDER_PARAMS_TYPES = ORDER_PARAMS_TYPES_V1 + ("bytes32",)
ORDER_PARAMS_TUPLE = "(" + ",".join(ORDER_PARAMS_TYPES) + ")"


@dataclass(frozen=True)
class ContractFunction:
    name: str
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)

    @property
    def selector_hex(self) -> str:
        return "0x" + self.selector.hex()

    def encode(self, *args: Any) -> bytes:
        if len(args) != len(self.inputs):
            raise ValueError(f"{self.signature} takes {len(self.inputs)} arguments, got {len(args)}")
        return self.selector + abi_encode(list(self.inputs), list(args))

    def decode_output(self, data: bytes) -> tuple[Any, ...]:
        return tuple(abi_decode(list(self.outputs), data))


@dataclass(frozen=True)
class EventSignature:
    name: str
    inputs: tuple[str, ...]
    indexed: tuple[bool, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @property
    def topic(self) -> bytes:
        return event_signature_to_log_topic(self.signature)

    @property
    def topic_hex(self) -> str:
        return "0x" + self.topic.hex()

    @property
    def data_types(self) -> list[str]:
        return [t for t, is_indexed in zip(self.inputs, self.indexed) if not is_indexed]

    def decode_data(self, data: bytes) -> tuple[Any, ...]:
        return tuple(abi_decode(self.data_types, data))


# ComposableCoW registry
CREATE_WITH_CONTEXT = ContractFunction(
    "createWithContext", (CONDITIONAL_ORDER_TUPLE, "address", "bytes", "bool")
)
REMOVE = ContractFunction("remove", ("bytes32",))
DOMAIN_SEPARATOR = ContractFunction("domainSeparator", (), ("bytes32",))
CONDITIONAL_ORDER_CREATED = EventSignature(
    "ConditionalOrderCreated", ("address", CONDITIONAL_ORDER_TUPLE), (True, False)
)

# GPv2Settlement
TRADE = EventSignature(
    "Trade",
    ("address", "address", "address", "uint256", "uint256", "uint256", "bytes"),
    (True, False, False, False, False, False, False),
)
ORDER_INVALIDATED = EventSignature("OrderInvalidated", ("address", "bytes"), (True, False))

# Order hash calculator
GET_ORDER_HASH = ContractFunction("getOrderHash", (ORDER_PARAMS_TUPLE,), ("bytes32",))

# Safe wallet configuration
SET_FALLBACK_HANDLER = ContractFunction("setFallbackHandler", ("address",))
SET_DOMAIN_VERIFIER = ContractFunction("setDomainVerifier", ("bytes32", "address"))

# ERC-20
ERC20_TRANSFER = ContractFunction("transfer", ("address", "uint256"), ("bool",))
ERC20_APPROVE = ContractFunction("approve", ("address", "uint256"), ("bool",))
ERC20_ALLOWANCE = ContractFunction("allowance", ("address", "address"), ("uint256",))
ERC20_BALANCE_OF = ContractFunction("balanceOf", ("address",), ("uint256",))
ERC20_DECIMALS = ContractFunction("decimals", (), ("uint8",))

# Conditional tokens (ERC-1155)
CTF_BALANCE_OF = ContractFunction("balanceOf", ("address", "uint256"), ("uint256",))
TRANSFER_SINGLE = EventSignature(
    "TransferSingle",
    ("address", "address", "address", "uint256", "uint256"),
    (True, True, True, False, False),
)


def pad_topic_address(address: str) -> str:
    raw = address.lower()
    if raw.startswith("0x"):
        raw = raw[2:]
    return "0x" + raw.rjust(64, "0")
