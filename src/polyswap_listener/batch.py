from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
import logging
from typing import Any

from web3 import Web3

from polyswap_listener.config import ListenerConfig
from polyswap_listener.contracts import (
    DOMAIN_SEPARATOR,
    ERC20_ALLOWANCE,
    ERC20_APPROVE,
    ERC20_BALANCE_OF,
    ERC20_DECIMALS,
    ERC20_TRANSFER,
    FALLBACK_HANDLER_STORAGE_SLOT,
    MAX_UINT256,
    SET_DOMAIN_VERIFIER,
    SET_FALLBACK_HANDLER,
)
from polyswap_listener.models import TransactionRequest, normalize_address, to_hex
from polyswap_listener.provider import ProviderError

LOGGER = logging.getLogger("polyswap_listener")

TRANSFER_GAS = 65_000
FALLBACK_HANDLER_GAS = 750_000
DOMAIN_VERIFIER_GAS = 100_000
DEFAULT_CALL_GAS = 200_000
FALLBACK_GAS_PRICE_WEI = Web3.to_wei(20, "gwei")

STEP_FALLBACK_HANDLER = "Set Safe fallback handler to PolySwap handler"
STEP_DOMAIN_VERIFIER = "Set Safe domain verifier for CoW Protocol"
STEP_APPROVAL = "Approve ERC20 token spending (unlimited approval)"
STEP_MAIN = "Execute conditional order transaction"


class BatchBuildError(RuntimeError):
    pass


class InsufficientBalanceError(BatchBuildError):
    def __init__(self, check: "BalanceCheck") -> None:
        self.check = check
        super().__init__(
            f"insufficient balance token={check.token} owner={check.owner} "
            f"balance={check.formatted_balance} required={check.formatted_required}"
        )


class GasEstimationError(BatchBuildError):
    pass


def format_units(amount: int, decimals: int) -> str:
    return format(Decimal(int(amount)).scaleb(-int(decimals)).normalize(), "f")


def default_gas_for(tx: TransactionRequest) -> int:
    selector = tx.selector
    if selector == ERC20_TRANSFER.selector_hex:
        return TRANSFER_GAS
    if selector == SET_FALLBACK_HANDLER.selector_hex:
        return FALLBACK_HANDLER_GAS
    if selector == SET_DOMAIN_VERIFIER.selector_hex:
        return DOMAIN_VERIFIER_GAS
    return DEFAULT_CALL_GAS


@dataclass(frozen=True)
class BalanceCheck:
    token: str
    owner: str
    balance: int
    required: int
    decimals: int

    @property
    def is_valid(self) -> bool:
        return self.balance >= self.required

    @property
    def formatted_balance(self) -> str:
        return format_units(self.balance, self.decimals)

    @property
    def formatted_required(self) -> str:
        return format_units(self.required, self.decimals)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "balance": str(self.balance),
            "required": str(self.required),
            "formatted_balance": self.formatted_balance,
            "formatted_required": self.formatted_required,
        }


@dataclass(frozen=True)
class GasEstimate:
    per_transaction: tuple[int, ...]
    gas_price_wei: int
    defaulted: tuple[int, ...] = ()

    @property
    def total(self) -> int:
        return sum(self.per_transaction)

    @property
    def cost_wei(self) -> int:
        return self.total * self.gas_price_wei

    def to_dict(self) -> dict[str, Any]:
        return {
            "per_transaction": [str(gas) for gas in self.per_transaction],
            "total_gas": str(self.total),
            "gas_price_wei": str(self.gas_price_wei),
            "estimated_cost": str(Web3.from_wei(self.cost_wei, "ether")),
            "defaulted": list(self.defaulted),
        }


@dataclass
class BatchTransaction:
    transactions: list[TransactionRequest] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    needs_fallback_handler: bool = False
    needs_domain_verifier: bool = False
    needs_approval: bool = False
    gas: GasEstimate | None = None
    balance: BalanceCheck | None = None

    def add(self, tx: TransactionRequest, step: str) -> None:
        self.transactions.append(tx)
        self.steps.append(step)

    @property
    def summary(self) -> list[str]:
        return [f"{index}. {step}" for index, step in enumerate(self.steps, start=1)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "transactions": [tx.to_dict() for tx in self.transactions],
            "summary": self.summary,
            "needs_fallback_handler": self.needs_fallback_handler,
            "needs_domain_verifier": self.needs_domain_verifier,
            "needs_approval": self.needs_approval,
            "gas": self.gas.to_dict() if self.gas else None,
            "balance": self.balance.to_dict() if self.balance else None,
        }


class BatchTransactionBuilder:
    def __init__(self, config: ListenerConfig, provider) -> None:
        self.config = config
        self.provider = provider

    def _call(self, address: str, fn, *args: Any) -> tuple[Any, ...]:
        return fn.decode_output(self.provider.call(address, fn.encode(*args)))

    def current_fallback_handler(self, wallet: str) -> str | None:
        """Fallback handler of a Safe wallet, or None when ``wallet`` has no code."""
        if not self.provider.get_code(wallet):
            return None
        raw = self.provider.get_storage_at(wallet, FALLBACK_HANDLER_STORAGE_SLOT)
        return to_hex(raw[-20:].rjust(20, b"\x00"))

    def fallback_handler_transaction(self, wallet: str) -> TransactionRequest | None:
        current = self.current_fallback_handler(wallet)
        if current is None:
            LOGGER.info("fallback_check_skipped wallet=%s reason=not_a_contract", wallet)
            return None
        expected = normalize_address(self.config.fallback_handler_address)
        if current == expected:
            return None
        LOGGER.info("fallback_handler_mismatch wallet=%s current=%s expected=%s", wallet, current, expected)
        return TransactionRequest(
            to=normalize_address(wallet),
            data=to_hex(SET_FALLBACK_HANDLER.encode(expected)),
        )

    def domain_verifier_transaction(self, wallet: str) -> TransactionRequest:
        (domain_separator,) = self._call(self.config.composable_cow_address, DOMAIN_SEPARATOR)
        return TransactionRequest(
            to=normalize_address(wallet),
            data=to_hex(
                SET_DOMAIN_VERIFIER.encode(
                    bytes(domain_separator), normalize_address(self.config.domain_verifier_address)
                )
            ),
        )

    def approval_transaction(self, token: str, owner: str, amount: int) -> TransactionRequest | None:
        spender = normalize_address(self.config.spender_address)
        (allowance,) = self._call(token, ERC20_ALLOWANCE, normalize_address(owner), spender)
        if int(allowance) >= int(amount):
            return None
        return TransactionRequest(
            to=normalize_address(token),
            data=to_hex(ERC20_APPROVE.encode(spender, MAX_UINT256)),
        )

    def check_balance(self, token: str, owner: str, required: int) -> BalanceCheck:
        (balance,) = self._call(token, ERC20_BALANCE_OF, normalize_address(owner))
        try:
            (decimals,) = self._call(token, ERC20_DECIMALS)
        except ProviderError:
            decimals = 18
        return BalanceCheck(
            token=normalize_address(token),
            owner=normalize_address(owner),
            balance=int(balance),
            required=int(required),
            decimals=int(decimals),
        )

    def validate_balance(self, token: str, owner: str, required: int) -> BalanceCheck:
        try:
            check = self.check_balance(token, owner, required)
        except ProviderError as exc:
            raise BatchBuildError(f"balance check failed: {exc}") from exc
        if not check.is_valid:
            raise InsufficientBalanceError(check)
        return check

    def build(
        self,
        *,
        wallet: str,
        main: TransactionRequest,
        token: str | None = None,
        amount: int = 0,
        estimate: bool = True,
    ) -> BatchTransaction:
        batch = BatchTransaction()
        if token is not None and amount > 0:
            batch.balance = self.validate_balance(token, wallet, amount)

        try:
            fallback_tx = self.fallback_handler_transaction(wallet)
        except ProviderError as exc:
            LOGGER.warning("fallback_check_failed wallet=%s error=%s", wallet, exc)
            fallback_tx = None
        if fallback_tx is not None:
            batch.add(fallback_tx, STEP_FALLBACK_HANDLER)
            batch.needs_fallback_handler = True
            try:
                batch.add(self.domain_verifier_transaction(wallet), STEP_DOMAIN_VERIFIER)
                batch.needs_domain_verifier = True
            except ProviderError as exc:
                LOGGER.warning("domain_verifier_unavailable wallet=%s error=%s", wallet, exc)

        if token is not None and amount > 0:
            try:
                approval_tx = self.approval_transaction(token, wallet, amount)
            except ProviderError as exc:
                raise BatchBuildError(f"allowance check failed: {exc}") from exc
            if approval_tx is not None:
                batch.add(approval_tx, STEP_APPROVAL)
                batch.needs_approval = True

        batch.add(main, STEP_MAIN)
        if estimate:
            batch.gas = self.estimate_gas(batch, wallet)
        return batch

    def estimate_gas(self, batch: BatchTransaction, sender: str, *, allow_defaults: bool = True) -> GasEstimate:
        per_tx: list[int] = []
        defaulted: list[int] = []
        for index, tx in enumerate(batch.transactions):
            if tx.selector == SET_DOMAIN_VERIFIER.selector_hex and batch.needs_fallback_handler:
                # Cannot be simulated before the handler change lands.
                per_tx.append(DOMAIN_VERIFIER_GAS)
                defaulted.append(index)
                continue
            try:
                per_tx.append(
                    self.provider.estimate_gas(sender=sender, to=tx.to, data=tx.data, value=int(tx.value))
                )
            except ProviderError as exc:
                if not allow_defaults:
                    raise GasEstimationError(f"gas estimation failed for step {index + 1}: {exc}") from exc
                LOGGER.debug("gas_estimate_default step=%s error=%s", index + 1, exc)
                per_tx.append(default_gas_for(tx))
                defaulted.append(index)
        try:
            gas_price = self.provider.gas_price()
        except ProviderError as exc:
            LOGGER.warning("gas_price_unavailable error=%s", exc)
            gas_price = FALLBACK_GAS_PRICE_WEI
        if not per_tx:
            raise GasEstimationError("batch has no transactions")
        return GasEstimate(tuple(per_tx), int(gas_price), tuple(defaulted))
