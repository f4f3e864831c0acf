from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import sys
import unittest
from unittest import mock

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from polyswap_listener.decoder import decode_log
from polyswap_listener.encoding import encode_order_params
from polyswap_listener.models import Order, OrderCreated, OrderStatus
from polyswap_listener.order_uid import OrderUidCalculator
from polyswap_listener.reconciler import (
    ALLOWED_TRANSITIONS,
    ApplyOutcome,
    InvalidTransitionError,
    OrderReconciler,
    ReconciliationError,
    check_transition,
)
from polyswap_listener.storage import Storage
from tests.helpers import (
    HANDLER,
    OWNER,
    FakeProvider,
    invalidated_log,
    order_created_log,
    sample_params,
    test_config,
    trade_log,
)


def _created(block_number: int = 100, log_index: int = 2, **kwargs) -> OrderCreated:
    blob = encode_order_params(sample_params(**kwargs))
    event = decode_log(order_created_log(blob, block_number=block_number, log_index=log_index), HANDLER)
    assert isinstance(event, OrderCreated)
    return event


def _snapshot(storage: Storage) -> list[tuple]:
    rows = storage.conn.execute("SELECT * FROM polyswap_orders ORDER BY id").fetchall()
    return [tuple(row[key] for key in row.keys() if key not in ("updated_at",)) for row in rows]


class OrderReconcilerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = test_config()
        self.storage = Storage(":memory:")
        self.reconciler = OrderReconciler(self.storage)
        self.calculator = OrderUidCalculator(FakeProvider(), self.config.order_hash_calculator_address)

    def tearDown(self) -> None:
        self.storage.close()

    def _live_with_uid(self) -> tuple[Order, str]:
        result = self.reconciler.apply(_created())
        order = result.order
        assert order is not None
        uid = self.calculator.compute_complete_uid(order.order_params(), order.owner)
        self.storage.update_order_uid(order.order_hash, uid)
        return order, uid

    def test_created_event_inserts_single_live_order(self) -> None:
        event = _created()
        result = self.reconciler.apply(event)

        self.assertEqual(result.outcome, ApplyOutcome.APPLIED)
        self.assertEqual(self.storage.status_counts(), {"draft": 0, "live": 1, "filled": 0, "canceled": 0})
        order = self.storage.get_by_hash(event.order_hash)
        self.assertEqual(order.status, OrderStatus.LIVE)
        self.assertEqual((order.block_number, order.log_index), (100, 2))
        self.assertEqual(order.sell_amount, "1000000")
        self.assertEqual(order.min_buy_amount, "1")

    def test_replaying_created_event_is_a_no_op(self) -> None:
        event = _created()
        self.reconciler.apply(event)
        before = _snapshot(self.storage)
        second = self.reconciler.apply(event)
        self.assertEqual(second.outcome, ApplyOutcome.DUPLICATE)
        self.assertEqual(_snapshot(self.storage), before)

    def test_trade_with_matching_uid_fills_order(self) -> None:
        order, uid = self._live_with_uid()
        result = self.reconciler.apply(
            decode_log(trade_log(uid, block_number=120, log_index=5, buy_amount=7, fee_amount=3), HANDLER)
        )
        self.assertEqual(result.outcome, ApplyOutcome.APPLIED)
        filled = self.storage.get_by_id(order.id)
        self.assertEqual(filled.status, OrderStatus.FILLED)
        self.assertEqual(filled.actual_sell_amount, "1000000")
        self.assertEqual(filled.actual_buy_amount, "7")
        self.assertEqual(filled.fee_amount, "3")
        self.assertEqual((filled.fill_block_number, filled.fill_log_index), (120, 5))
        self.assertIsNotNone(filled.filled_at)

    def test_trade_replay_is_duplicate(self) -> None:
        _order, uid = self._live_with_uid()
        trade = decode_log(trade_log(uid, block_number=120, log_index=5), HANDLER)
        self.reconciler.apply(trade)
        before = _snapshot(self.storage)
        self.assertEqual(self.reconciler.apply(trade).outcome, ApplyOutcome.DUPLICATE)
        self.assertEqual(_snapshot(self.storage), before)

    def test_unknown_uid_is_untracked(self) -> None:
        result = self.reconciler.apply(decode_log(trade_log("0x" + "ee" * 56, block_number=1, log_index=0), HANDLER))
        self.assertEqual(result.outcome, ApplyOutcome.UNTRACKED)

    def test_invalidated_then_trade_is_skipped_not_reopened(self) -> None:
        order, uid = self._live_with_uid()
        canceled = self.reconciler.apply(decode_log(invalidated_log(uid, block_number=130, log_index=0), HANDLER))
        self.assertEqual(canceled.outcome, ApplyOutcome.APPLIED)
        self.assertEqual(self.storage.get_by_id(order.id).status, OrderStatus.CANCELED)
        self.assertEqual(self.storage.get_by_id(order.id).fill_transaction_hash, "0x" + f"{130:064x}")

        late_trade = self.reconciler.apply(decode_log(trade_log(uid, block_number=131, log_index=0), HANDLER))
        self.assertEqual(late_trade.outcome, ApplyOutcome.SKIPPED)
        self.assertEqual(self.storage.get_by_id(order.id).status, OrderStatus.CANCELED)

    def test_created_event_claims_matching_draft(self) -> None:
        draft = self.storage.insert_draft(
            Order(
                id=None,
                owner=OWNER,
                handler=HANDLER,
                sell_token=sample_params().sell_token,
                buy_token=sample_params().buy_token,
                sell_amount="1000000",
                min_buy_amount="1",
                start_time=1700000000,
                end_time=1701000000,
                polymarket_order_hash=sample_params().polymarket_order_hash,
                app_data="0x" + "00" * 32,
                status=OrderStatus.DRAFT,
                market_id="m-1",
            )
        )
        event = _created()
        result = self.reconciler.apply(event)
        self.assertEqual(result.outcome, ApplyOutcome.APPLIED)
        self.assertEqual(result.order.id, draft.id)
        self.assertEqual(result.order.market_id, "m-1")
        self.assertEqual(result.order.order_hash, event.order_hash)
        self.assertEqual(self.storage.status_counts()["live"], 1)
        self.assertEqual(self.storage.status_counts()["draft"], 0)

    def test_claimed_draft_takes_economic_fields_from_event(self) -> None:
        draft = self.storage.insert_draft(
            Order(
                id=None,
                owner=OWNER,
                handler=HANDLER,
                sell_token=sample_params().sell_token,
                buy_token=sample_params().buy_token,
                sell_amount="1000000",
                min_buy_amount="50",
                start_time=1700000000,
                end_time=1709999999,
                polymarket_order_hash=sample_params().polymarket_order_hash,
                app_data="0x" + "00" * 32,
                status=OrderStatus.DRAFT,
                receiver="0x" + "dd" * 20,
            )
        )
        event = _created(min_buy_amount=3, end_time=1701000000, receiver="0x" + "cc" * 20)
        result = self.reconciler.apply(event)

        self.assertEqual(result.outcome, ApplyOutcome.APPLIED)
        promoted = self.storage.get_by_id(draft.id)
        self.assertEqual(promoted.status, OrderStatus.LIVE)
        self.assertEqual(promoted.min_buy_amount, "3")
        self.assertEqual(promoted.end_time, 1701000000)
        self.assertEqual(promoted.receiver, "0x" + "cc" * 20)
        self.assertEqual(promoted.order_params(), event.params)

    def test_conflicting_event_at_same_position_is_an_error(self) -> None:
        self.reconciler.apply(_created())
        with self.assertRaises(ReconciliationError):
            self.reconciler.apply(_created(sell_amount=5))

    def test_transition_table(self) -> None:
        statuses = list(OrderStatus)
        for current in statuses:
            for target in statuses:
                if (current, target) in ALLOWED_TRANSITIONS:
                    check_transition(current, target)
                else:
                    with self.assertRaises(InvalidTransitionError):
                        check_transition(current, target)

    def test_direct_transition_from_terminal_state_raises(self) -> None:
        order, uid = self._live_with_uid()
        self.reconciler.apply(decode_log(invalidated_log(uid, block_number=130, log_index=0), HANDLER))
        canceled = self.storage.get_by_id(order.id)
        with self.assertRaises(InvalidTransitionError):
            self.reconciler.transition(canceled, OrderStatus.LIVE)

    def test_transition_raises_when_row_disappears(self) -> None:
        order, _uid = self._live_with_uid()
        with mock.patch.object(self.storage, "get_by_id", return_value=None):
            with self.assertRaises(ReconciliationError):
                self.reconciler.transition(order, OrderStatus.CANCELED)

    def test_settle_rejects_stored_order_without_id(self) -> None:
        order, uid = self._live_with_uid()
        trade = decode_log(trade_log(uid, block_number=120, log_index=5), HANDLER)
        with mock.patch.object(self.storage, "get_by_uid", return_value=replace(order, id=None, order_uid=uid)):
            with self.assertRaises(ReconciliationError):
                self.reconciler.apply(trade)


if __name__ == "__main__":
    unittest.main()
