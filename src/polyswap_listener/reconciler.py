from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging

from polyswap_listener.models import (
    ChainEvent,
    FillDetail,
    Order,
    OrderCreated,
    OrderInvalidated,
    OrderStatus,
    Trade,
)

LOGGER = logging.getLogger("polyswap_listener")

ALLOWED_TRANSITIONS = frozenset(
    {
        (OrderStatus.DRAFT, OrderStatus.LIVE),
        (OrderStatus.LIVE, OrderStatus.FILLED),
        (OrderStatus.LIVE, OrderStatus.CANCELED),
    }
)


class ReconciliationError(RuntimeError):
    pass


class InvalidTransitionError(ReconciliationError):
    def __init__(self, current: OrderStatus, target: OrderStatus, order_ref: object = None) -> None:
        self.current = current
        self.target = target
        super().__init__(f"order={order_ref} transition {current.value}->{target.value} is not allowed")


def check_transition(current: OrderStatus, target: OrderStatus, order_ref: object = None) -> None:
    if (current, target) not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(current, target, order_ref)


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNTRACKED = "untracked"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ApplyResult:
    outcome: ApplyOutcome
    order: Order | None = None
    reason: str = ""


class OrderReconciler:
    def __init__(self, storage) -> None:
        self.storage = storage

    def apply(self, event: ChainEvent) -> ApplyResult:
        if isinstance(event, OrderCreated):
            return self.apply_order_created(event)
        if isinstance(event, Trade):
            return self.apply_trade(event)
        if isinstance(event, OrderInvalidated):
            return self.apply_order_invalidated(event)
        raise TypeError(f"unsupported event type {type(event).__name__}")

    def apply_order_created(self, event: OrderCreated) -> ApplyResult:
        existing = self.storage.get_by_hash(event.order_hash)
        if existing is None:
            occupant = self.storage.get_by_position(event.block_number, event.log_index)
            if occupant is not None:
                raise ReconciliationError(
                    f"position block={event.block_number} log={event.log_index} already holds "
                    f"order_hash={occupant.order_hash}, got {event.order_hash}"
                )
            draft = self._matching_draft(event)
            if draft is not None:
                return self._promote(draft, event)
            stored = self.storage.upsert_by_hash(_order_from_event(event))
            LOGGER.info(
                "order_created order_hash=%s owner=%s block=%s log=%s",
                event.order_hash,
                event.owner,
                event.block_number,
                event.log_index,
            )
            return ApplyResult(ApplyOutcome.APPLIED, stored)

        if existing.block_number == event.block_number and existing.log_index == event.log_index:
            return ApplyResult(ApplyOutcome.DUPLICATE, existing)
        if existing.status == OrderStatus.DRAFT:
            return self._promote(existing, event)
        LOGGER.warning(
            "order_created_replayed order_hash=%s status=%s known_block=%s event_block=%s",
            event.order_hash,
            existing.status.value,
            existing.block_number,
            event.block_number,
        )
        return ApplyResult(ApplyOutcome.SKIPPED, existing, "order already observed on chain")

    def apply_trade(self, event: Trade) -> ApplyResult:
        fill = FillDetail(
            transaction_hash=event.transaction_hash,
            block_number=event.block_number,
            log_index=event.log_index,
            actual_sell_amount=str(event.sell_amount),
            actual_buy_amount=str(event.buy_amount),
            fee_amount=str(event.fee_amount),
        )
        return self._settle(event.order_uid, event.owner, OrderStatus.FILLED, fill, "trade")

    def apply_order_invalidated(self, event: OrderInvalidated) -> ApplyResult:
        fill = FillDetail(
            transaction_hash=event.transaction_hash,
            block_number=event.block_number,
            log_index=event.log_index,
        )
        return self._settle(event.order_uid, event.owner, OrderStatus.CANCELED, fill, "invalidated")

    def transition(self, order: Order, target: OrderStatus, fill: FillDetail | None = None) -> Order:
        check_transition(order.status, target, order.id)
        if order.id is None:
            raise ReconciliationError("cannot transition an order without id")
        updated = self.storage.update_status(
            order_id=order.id, expected=order.status, status=target, fill=fill
        )
        if not updated:
            raise ReconciliationError(f"order={order.id} changed concurrently, expected {order.status.value}")
        stored = self.storage.get_by_id(order.id)
        if stored is None:
            raise ReconciliationError(f"order={order.id} vanished after transition")
        return stored

    def _settle(
        self,
        order_uid: str,
        owner: str,
        target: OrderStatus,
        fill: FillDetail,
        kind: str,
    ) -> ApplyResult:
        order = self.storage.get_by_uid(order_uid)
        if order is None:
            return ApplyResult(ApplyOutcome.UNTRACKED)
        if order.fill_block_number == fill.block_number and order.fill_log_index == fill.log_index:
            return ApplyResult(ApplyOutcome.DUPLICATE, order)
        if order.owner != owner:
            LOGGER.warning("%s_owner_mismatch uid=%s order_owner=%s event_owner=%s", kind, order_uid, order.owner, owner)
            return ApplyResult(ApplyOutcome.SKIPPED, order, "owner mismatch")
        if order.status != OrderStatus.LIVE:
            LOGGER.warning(
                "%s_unexpected_status order_hash=%s status=%s block=%s log=%s",
                kind,
                order.order_hash,
                order.status.value,
                fill.block_number,
                fill.log_index,
            )
            return ApplyResult(ApplyOutcome.SKIPPED, order, f"order is {order.status.value}")
        check_transition(order.status, target, order.order_hash)
        if order.id is None:
            raise ReconciliationError(f"stored order {order.order_hash} has no id")
        if not self.storage.update_status(order_id=order.id, expected=OrderStatus.LIVE, status=target, fill=fill):
            return ApplyResult(ApplyOutcome.SKIPPED, order, "status changed concurrently")
        LOGGER.info(
            "order_%s order_hash=%s tx=%s block=%s",
            target.value,
            order.order_hash,
            fill.transaction_hash,
            fill.block_number,
        )
        return ApplyResult(ApplyOutcome.APPLIED, self.storage.get_by_id(order.id))

    def _matching_draft(self, event: OrderCreated) -> Order | None:
        draft = self.storage.find_draft_for_external_ref(event.owner, event.params.polymarket_order_hash)
        if draft is None:
            return None
        if (
            draft.sell_token != event.params.sell_token
            or draft.buy_token != event.params.buy_token
            or int(draft.sell_amount) != event.params.sell_amount
        ):
            return None
        return draft

    def _promote(self, draft: Order, event: OrderCreated) -> ApplyResult:
        check_transition(draft.status, OrderStatus.LIVE, draft.id)
        if draft.id is None:
            raise ReconciliationError("cannot promote a draft without id")
        promoted = self.storage.promote_draft(
            draft.id,
            order_hash=event.order_hash,
            order_uid=None,
            handler=event.handler,
            params=event.params,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
            log_index=event.log_index,
        )
        if not promoted:
            return ApplyResult(ApplyOutcome.SKIPPED, draft, "draft changed concurrently")
        LOGGER.info(
            "draft_promoted id=%s order_hash=%s block=%s log=%s",
            draft.id,
            event.order_hash,
            event.block_number,
            event.log_index,
        )
        return ApplyResult(ApplyOutcome.APPLIED, self.storage.get_by_id(draft.id))


def _order_from_event(event: OrderCreated) -> Order:
    params = event.params
    return Order(
        id=None,
        owner=event.owner,
        handler=event.handler,
        sell_token=params.sell_token,
        buy_token=params.buy_token,
        sell_amount=str(params.sell_amount),
        min_buy_amount=str(params.min_buy_amount),
        start_time=params.start_time,
        end_time=params.end_time,
        polymarket_order_hash=params.polymarket_order_hash,
        app_data=params.app_data,
        status=OrderStatus.LIVE,
        receiver=params.receiver,
        order_hash=event.order_hash,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
        log_index=event.log_index,
    )
