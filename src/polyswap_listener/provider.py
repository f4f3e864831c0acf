from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Callable, Sequence, TypeVar

from web3 import Web3
from web3.exceptions import TransactionNotFound

from polyswap_listener.models import RawLog, hex_to_bytes, to_hex

LOGGER = logging.getLogger("polyswap_listener")

T = TypeVar("T")

Topics = Sequence[str | Sequence[str] | None]


class ProviderError(RuntimeError):
    pass


@dataclass(frozen=True)
class TransactionReceipt:
    transaction_hash: str
    status: int
    block_number: int
    logs: list[RawLog] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class NodeProvider:
    """JSON-RPC access to one chain through web3."""

    def __init__(self, rpc_url: str, *, chain_id: int, timeout_seconds: float = 30.0) -> None:
        self.rpc_url = rpc_url
        self.expected_chain_id = int(chain_id)
        self.timeout_seconds = timeout_seconds
        self._w3: Web3 | None = None

    def _web3(self) -> Web3:
        if self._w3 is not None:
            return self._w3
        provider = Web3.HTTPProvider(
            self.rpc_url,
            request_kwargs={"timeout": max(5.0, self.timeout_seconds)},
        )
        self._w3 = Web3(provider)
        return self._w3

    def _rpc(self, method: str, fn: Callable[[Web3], T]) -> T:
        try:
            return fn(self._web3())
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(f"{method} failed: {exc}") from exc

    def reconnect(self) -> None:
        LOGGER.info("provider_reconnect url=%s", _redact(self.rpc_url))
        self._w3 = None
        self.check_connection()

    def check_connection(self) -> int:
        chain_id = self.chain_id()
        if chain_id != self.expected_chain_id:
            raise ProviderError(
                f"connected to chain_id={chain_id}, expected chain_id={self.expected_chain_id}"
            )
        return self.get_block_number()

    def chain_id(self) -> int:
        return int(self._rpc("eth_chainId", lambda w3: w3.eth.chain_id))

    def get_block_number(self) -> int:
        return int(self._rpc("eth_blockNumber", lambda w3: w3.eth.block_number))

    def get_logs(self, address: str, topics: Topics, from_block: int, to_block: int) -> list[RawLog]:
        params: dict[str, Any] = {
            "address": Web3.to_checksum_address(address),
            "topics": list(topics),
            "fromBlock": int(from_block),
            "toBlock": int(to_block),
        }
        entries = self._rpc("eth_getLogs", lambda w3: w3.eth.get_logs(params))
        return [RawLog.from_web3(entry) for entry in entries]

    def call(self, address: str, data: bytes) -> bytes:
        tx = {"to": Web3.to_checksum_address(address), "data": to_hex(data)}
        return bytes(self._rpc("eth_call", lambda w3: w3.eth.call(tx)))

    def get_storage_at(self, address: str, slot: int) -> bytes:
        checksum = Web3.to_checksum_address(address)
        return bytes(self._rpc("eth_getStorageAt", lambda w3: w3.eth.get_storage_at(checksum, slot)))

    def get_code(self, address: str) -> bytes:
        checksum = Web3.to_checksum_address(address)
        return bytes(self._rpc("eth_getCode", lambda w3: w3.eth.get_code(checksum)))

    def estimate_gas(self, *, sender: str, to: str, data: str, value: int = 0) -> int:
        tx = {
            "from": Web3.to_checksum_address(sender),
            "to": Web3.to_checksum_address(to),
            "data": data,
            "value": int(value),
        }
        return int(self._rpc("eth_estimateGas", lambda w3: w3.eth.estimate_gas(tx)))

    def gas_price(self) -> int:
        return int(self._rpc("eth_gasPrice", lambda w3: w3.eth.gas_price))

    def get_transaction_receipt(self, tx_hash: str) -> TransactionReceipt | None:
        def _fetch(w3: Web3) -> Any:
            try:
                return w3.eth.get_transaction_receipt(hex_to_bytes(tx_hash))
            except TransactionNotFound:
                return None

        receipt = self._rpc("eth_getTransactionReceipt", _fetch)
        if receipt is None:
            return None
        return TransactionReceipt(
            transaction_hash=to_hex(receipt["transactionHash"]),
            status=int(receipt["status"]),
            block_number=int(receipt["blockNumber"]),
            logs=[RawLog.from_web3(entry) for entry in receipt["logs"]],
        )


def _redact(url: str) -> str:
    # Hosted RPC URLs often embed an API key in the last path segment.
    head, sep, tail = url.rpartition("/")
    if sep and len(tail) >= 16:
        return f"{head}/***"
    return url
