from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from polyswap_listener.batch import BatchTransaction, BatchTransactionBuilder
from polyswap_listener.config import ListenerConfig, ZERO_BYTES32
from polyswap_listener.contracts import CONDITIONAL_ORDER_CREATED
from polyswap_listener.decoder import decode_log
from polyswap_listener.encoding import TransactionEncoder
from polyswap_listener.models import (
    Order,
    OrderCreated,
    OrderStatus,
    TransactionRequest,
    normalize_address,
    normalize_bytes32,
)
from polyswap_listener.order_uid import OrderUidCalculator
from polyswap_listener.provider import ProviderError
from polyswap_listener.reconciler import OrderReconciler, ReconciliationError, check_transition

LOGGER = logging.getLogger("polyswap_listener")


class OrderFlowError(RuntimeError):
    pass


@dataclass(frozen=True)
class PreparedBatch:
    order: Order
    batch: BatchTransaction
    order_hash: str
    salt: str

    def to_dict(self) -> dict[str, Any]:
        payload = self.batch.to_dict()
        payload["order_id"] = self.order.id
        payload["order_hash"] = self.order_hash
        payload["salt"] = self.salt
        return payload


class OrderService:
    """Creation, confirmation and cancellation flows for conditional orders."""

    def __init__(
        self,
        config: ListenerConfig,
        storage,
        provider,
        calculator: OrderUidCalculator,
        encoder: TransactionEncoder,
        builder: BatchTransactionBuilder,
        reconciler: OrderReconciler,
    ) -> None:
        self.config = config
        self.storage = storage
        self.provider = provider
        self.calculator = calculator
        self.encoder = encoder
        self.builder = builder
        self.reconciler = reconciler

    def create_draft(
        self,
        *,
        owner: str,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        min_buy_amount: int,
        start_time: int,
        end_time: int,
        polymarket_order_hash: str,
        app_data: str | None = None,
        receiver: str | None = None,
        market_id: str | None = None,
        outcome_selected: int | None = None,
        bet_percentage: str | None = None,
    ) -> Order:
        if int(sell_amount) <= 0 or int(min_buy_amount) <= 0:
            raise OrderFlowError("sell_amount and min_buy_amount must be positive")
        if int(end_time) <= int(start_time):
            raise OrderFlowError("end_time must be after start_time")
        order = Order(
            id=None,
            owner=normalize_address(owner),
            handler=normalize_address(self.config.handler_address),
            sell_token=normalize_address(sell_token),
            buy_token=normalize_address(buy_token),
            sell_amount=str(int(sell_amount)),
            min_buy_amount=str(int(min_buy_amount)),
            start_time=int(start_time),
            end_time=int(end_time),
            polymarket_order_hash=normalize_bytes32(polymarket_order_hash),
            app_data=normalize_bytes32(app_data or self.config.app_data),
            status=OrderStatus.DRAFT,
            receiver=normalize_address(receiver) if receiver else None,
            market_id=market_id,
            outcome_selected=outcome_selected,
            bet_percentage=bet_percentage,
        )
        stored = self.storage.insert_draft(order)
        LOGGER.info("draft_created id=%s owner=%s", stored.id, stored.owner)
        return stored

    def _load_draft(self, order_id: int) -> Order:
        order = self.storage.get_by_id(order_id)
        if order is None:
            raise OrderFlowError(f"order {order_id} not found")
        if order.status != OrderStatus.DRAFT:
            raise OrderFlowError(f"order {order_id} is {order.status.value}, expected draft")
        if order.polymarket_order_hash == ZERO_BYTES32:
            raise OrderFlowError(f"order {order_id} has no linked prediction-market order")
        return order

    def prepare_create(self, order_id: int, salt: str | None = None) -> tuple[TransactionRequest, str, str]:
        order = self._load_draft(order_id)
        tx, conditional = self.encoder.build_create_transaction(order.order_params(), salt)
        return tx, self.encoder.order_hash(conditional), conditional.salt

    def prepare_batch(self, order_id: int, salt: str | None = None) -> PreparedBatch:
        order = self._load_draft(order_id)
        tx, conditional = self.encoder.build_create_transaction(order.order_params(), salt)
        batch = self.builder.build(
            wallet=order.owner,
            main=tx,
            token=order.sell_token,
            amount=int(order.sell_amount),
        )
        LOGGER.info(
            "batch_prepared id=%s steps=%s total_gas=%s",
            order.id,
            len(batch.transactions),
            batch.gas.total if batch.gas else 0,
        )
        return PreparedBatch(order, batch, self.encoder.order_hash(conditional), conditional.salt)

    def confirm_creation(self, order_id: int, tx_hash: str) -> Order:
        """Promote a draft to live from the receipt of its signed creation transaction."""
        order = self.storage.get_by_id(order_id)
        if order is None:
            raise OrderFlowError(f"order {order_id} not found")
        if order.status == OrderStatus.LIVE and order.transaction_hash == tx_hash.lower() and order.order_uid:
            return order
        check_transition(order.status, OrderStatus.LIVE, order_id)

        event = self._created_event_from_receipt(tx_hash, order.owner)
        existing = self.storage.get_by_hash(event.order_hash)
        if existing is not None and existing.id != order.id:
            raise ReconciliationError(
                f"order_hash={event.order_hash} already recorded on order {existing.id}"
            )
        # Computed before any write so a failure leaves the draft untouched.
        order_uid = self.calculator.compute_complete_uid(event.params, order.owner)
        promoted = self.storage.promote_draft(
            order.id,
            order_hash=event.order_hash,
            order_uid=order_uid,
            handler=event.handler,
            params=event.params,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
            log_index=event.log_index,
        )
        if not promoted:
            raise ReconciliationError(f"order {order_id} is no longer a draft")
        LOGGER.info("creation_confirmed id=%s order_hash=%s tx=%s", order_id, event.order_hash, tx_hash)
        stored = self.storage.get_by_id(order_id)
        if stored is None:
            raise ReconciliationError(f"order {order_id} vanished after promotion")
        return stored

    def prepare_cancel(self, order_hash: str, owner: str, *, as_batch: bool = False) -> TransactionRequest | BatchTransaction:
        order = self.storage.get_by_hash_and_owner(normalize_bytes32(order_hash), normalize_address(owner))
        if order is None:
            raise OrderFlowError(f"order {order_hash} not found for owner {owner}")
        if order.status != OrderStatus.LIVE:
            raise OrderFlowError(f"order {order_hash} is {order.status.value}, only live orders can be canceled")
        tx = self.encoder.build_cancel_transaction(order.order_hash or order_hash)
        if not as_batch:
            return tx
        return self.builder.build(wallet=order.owner, main=tx)

    def confirm_cancellation(self, order_hash: str, owner: str) -> Order:
        order = self.storage.get_by_hash_and_owner(normalize_bytes32(order_hash), normalize_address(owner))
        if order is None:
            raise OrderFlowError(f"order {order_hash} not found for owner {owner}")
        canceled = self.reconciler.transition(order, OrderStatus.CANCELED)
        LOGGER.info("cancellation_confirmed order_hash=%s", order_hash)
        return canceled

    def _created_event_from_receipt(self, tx_hash: str, owner: str) -> OrderCreated:
        try:
            receipt = self.provider.get_transaction_receipt(tx_hash)
        except ProviderError as exc:
            raise OrderFlowError(f"cannot read receipt for {tx_hash}: {exc}") from exc
        if receipt is None:
            raise OrderFlowError(f"transaction {tx_hash} not found or not mined yet")
        if not receipt.succeeded:
            raise OrderFlowError(f"transaction {tx_hash} reverted")
        registry = normalize_address(self.config.composable_cow_address)
        for log in receipt.logs:
            if log.address != registry or not log.topics or log.topics[0] != CONDITIONAL_ORDER_CREATED.topic:
                continue
            decoded = decode_log(log, self.config.handler_address)
            if isinstance(decoded, OrderCreated) and decoded.owner == normalize_address(owner):
                return decoded
        raise OrderFlowError(f"no ConditionalOrderCreated event for {owner} in {tx_hash}")
