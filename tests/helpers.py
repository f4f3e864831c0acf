from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import sys
from typing import Any, Callable

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from eth_abi import encode as abi_encode  # noqa: E402
from eth_utils import keccak  # noqa: E402

from polyswap_listener.config import load_config  # noqa: E402
from polyswap_listener.contracts import (  # noqa: E402
    CONDITIONAL_ORDER_CREATED,
    CONDITIONAL_ORDER_TUPLE,
    GET_ORDER_HASH,
    ORDER_INVALIDATED,
    TRADE,
)
from polyswap_listener.models import OrderParams, RawLog, hex_to_bytes  # noqa: E402
from polyswap_listener.provider import ProviderError, TransactionReceipt  # noqa: E402

HANDLER = "0x" + "ab" * 20
OWNER = "0x" + "0c" * 20
SELL_TOKEN = "0x" + "0a" * 20
BUY_TOKEN = "0x" + "0b" * 20
SALT = "0x" + "5a" * 32
EXTERNAL_REF = "0x" + "00" * 31 + "01"


def test_config(**kwargs):
    cfg = replace(
        load_config(),
        rpc_url="http://localhost:8545",
        handler_address=HANDLER,
        database_path=":memory:",
        starting_block=0,
        batch_size=100,
        backfill_pause_seconds=0.0,
        reconnect_delay_seconds=0.0,
        reconnect_retry_seconds=0.0,
        max_range_attempts=3,
        poly_private_key="",
        log_level="INFO",
    )
    return replace(cfg, **kwargs)


test_config.__test__ = False  # helper, not a test


def sample_params(**kwargs) -> OrderParams:
    values: dict[str, Any] = {
        "sell_token": SELL_TOKEN,
        "buy_token": BUY_TOKEN,
        "receiver": OWNER,
        "sell_amount": 1000000,
        "min_buy_amount": 1,
        "start_time": 1700000000,
        "end_time": 1701000000,
        "polymarket_order_hash": EXTERNAL_REF,
        "app_data": "0x" + "00" * 32,
    }
    values.update(kwargs)
    return OrderParams(**values)


def topic_for_address(address: str) -> bytes:
    return bytes(12) + hex_to_bytes(address)


def order_created_log(
    static_input: bytes,
    *,
    block_number: int,
    log_index: int,
    owner: str = OWNER,
    handler: str = HANDLER,
    salt: str = SALT,
    address: str | None = None,
    tx_hash: str | None = None,
) -> RawLog:
    cfg_address = address or load_config().composable_cow_address
    return RawLog(
        address=cfg_address.lower(),
        topics=(CONDITIONAL_ORDER_CREATED.topic, topic_for_address(owner)),
        data=abi_encode([CONDITIONAL_ORDER_TUPLE], [(handler, hex_to_bytes(salt), static_input)]),
        block_number=block_number,
        transaction_hash=tx_hash or "0x" + f"{block_number:064x}",
        log_index=log_index,
    )


def trade_log(
    order_uid: str,
    *,
    block_number: int,
    log_index: int,
    owner: str = OWNER,
    sell_amount: int = 1000000,
    buy_amount: int = 5,
    fee_amount: int = 100,
) -> RawLog:
    return RawLog(
        address=load_config().settlement_address.lower(),
        topics=(TRADE.topic, topic_for_address(owner)),
        data=abi_encode(
            ["address", "address", "uint256", "uint256", "uint256", "bytes"],
            [SELL_TOKEN, BUY_TOKEN, sell_amount, buy_amount, fee_amount, hex_to_bytes(order_uid)],
        ),
        block_number=block_number,
        transaction_hash="0x" + f"{block_number:064x}",
        log_index=log_index,
    )


def invalidated_log(order_uid: str, *, block_number: int, log_index: int, owner: str = OWNER) -> RawLog:
    return RawLog(
        address=load_config().settlement_address.lower(),
        topics=(ORDER_INVALIDATED.topic, topic_for_address(owner)),
        data=abi_encode(["bytes"], [hex_to_bytes(order_uid)]),
        block_number=block_number,
        transaction_hash="0x" + f"{block_number:064x}",
        log_index=log_index,
    )


def fake_order_digest(calldata: bytes) -> bytes:
    return abi_encode(["bytes32"], [keccak(calldata)])


class FakeProvider:
    """In-memory stand-in for NodeProvider."""

    def __init__(self, head: int = 0) -> None:
        self.head = head
        self.logs: list[RawLog] = []
        self.calls: list[tuple[str, bytes]] = []
        self.get_logs_calls: list[tuple[str, int, int]] = []
        self.call_handlers: dict[tuple[str, str], Callable[[bytes], bytes]] = {}
        self.storage: dict[tuple[str, int], bytes] = {}
        self.code: dict[str, bytes] = {}
        self.receipts: dict[str, TransactionReceipt] = {}
        self.gas_estimates: dict[str, int] = {}
        self.gas_price_wei: int | None = 30_000_000_000
        self.failing_ranges: set[int] = set()
        self.block_number_errors = 0
        self.reconnects = 0
        self.reconnect_errors = 0
        self.on_call(load_config().order_hash_calculator_address, GET_ORDER_HASH.selector_hex, fake_order_digest)

    def on_call(self, address: str, selector: str, handler: Callable[[bytes], bytes]) -> None:
        self.call_handlers[(address.lower(), selector.lower())] = handler

    def get_block_number(self) -> int:
        if self.block_number_errors > 0:
            self.block_number_errors -= 1
            raise ProviderError("eth_blockNumber failed: connection reset")
        return self.head

    def reconnect(self) -> None:
        self.reconnects += 1
        if self.reconnect_errors > 0:
            self.reconnect_errors -= 1
            raise ProviderError("eth_chainId failed: connection refused")

    def check_connection(self) -> int:
        return self.head

    def get_logs(self, address, topics, from_block, to_block) -> list[RawLog]:
        self.get_logs_calls.append((address.lower(), from_block, to_block))
        if from_block in self.failing_ranges:
            raise ProviderError("eth_getLogs failed: 429 Too Many Requests")
        if from_block > self.head:
            raise ProviderError("eth_getLogs failed: from block is greater than latest block")
        wanted = topics[0] if topics else None
        if isinstance(wanted, str):
            wanted = [wanted]
        wanted_topics = {hex_to_bytes(t) for t in wanted} if wanted else None
        return [
            log
            for log in self.logs
            if log.address == address.lower()
            and from_block <= log.block_number <= to_block
            and (wanted_topics is None or log.topics[0] in wanted_topics)
        ]

    def call(self, address: str, data: bytes) -> bytes:
        self.calls.append((address.lower(), data))
        handler = self.call_handlers.get((address.lower(), "0x" + data[:4].hex()))
        if handler is None:
            raise ProviderError("eth_call failed: execution reverted")
        return handler(data)

    def get_storage_at(self, address: str, slot: int) -> bytes:
        return self.storage.get((address.lower(), slot), bytes(32))

    def get_code(self, address: str) -> bytes:
        return self.code.get(address.lower(), b"")

    def estimate_gas(self, *, sender: str, to: str, data: str, value: int = 0) -> int:
        selector = data[:10].lower()
        if selector not in self.gas_estimates:
            raise ProviderError("eth_estimateGas failed: execution reverted")
        return self.gas_estimates[selector]

    def gas_price(self) -> int:
        if self.gas_price_wei is None:
            raise ProviderError("eth_gasPrice failed: timeout")
        return self.gas_price_wei

    def get_transaction_receipt(self, tx_hash: str) -> TransactionReceipt | None:
        return self.receipts.get(tx_hash.lower())
