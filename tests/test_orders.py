from __future__ import annotations

from pathlib import Path
import sys
import unittest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from eth_abi import encode as abi_encode

from polyswap_listener.batch import STEP_APPROVAL, STEP_MAIN, BatchTransactionBuilder
from polyswap_listener.contracts import (
    CREATE_WITH_CONTEXT,
    ERC20_ALLOWANCE,
    ERC20_BALANCE_OF,
    ERC20_DECIMALS,
    REMOVE,
)
from polyswap_listener.decoder import conditional_order_hash, decode_log
from polyswap_listener.encoding import TransactionEncoder, encode_order_params
from polyswap_listener.models import OrderStatus, TransactionRequest
from polyswap_listener.order_uid import OrderUidCalculator
from polyswap_listener.orders import OrderFlowError, OrderService
from polyswap_listener.provider import TransactionReceipt
from polyswap_listener.reconciler import ApplyOutcome, InvalidTransitionError, OrderReconciler
from polyswap_listener.storage import Storage
from tests.helpers import (
    BUY_TOKEN,
    EXTERNAL_REF,
    HANDLER,
    OWNER,
    SALT,
    SELL_TOKEN,
    FakeProvider,
    order_created_log,
    test_config,
)

TX_HASH = "0x" + "ee" * 32


def _uint(value: int):
    return lambda _data: abi_encode(["uint256"], [value])


class OrderServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = test_config()
        self.storage = Storage(":memory:")
        self.provider = FakeProvider(head=500)
        self.provider.on_call(SELL_TOKEN, ERC20_BALANCE_OF.selector_hex, _uint(10_000_000))
        self.provider.on_call(SELL_TOKEN, ERC20_ALLOWANCE.selector_hex, _uint(0))
        self.provider.on_call(SELL_TOKEN, ERC20_DECIMALS.selector_hex, _uint(6))
        self.calculator = OrderUidCalculator(self.provider, self.config.order_hash_calculator_address)
        self.reconciler = OrderReconciler(self.storage)
        self.service = OrderService(
            self.config,
            self.storage,
            self.provider,
            self.calculator,
            TransactionEncoder(self.config),
            BatchTransactionBuilder(self.config, self.provider),
            self.reconciler,
        )

    def tearDown(self) -> None:
        self.storage.close()

    def _draft(self, **overrides):
        values = dict(
            owner=OWNER,
            sell_token=SELL_TOKEN,
            buy_token=BUY_TOKEN,
            sell_amount=1_000_000,
            min_buy_amount=1,
            start_time=1700000000,
            end_time=1701000000,
            polymarket_order_hash=EXTERNAL_REF,
            market_id="market-1",
            outcome_selected=1,
            bet_percentage="50",
        )
        values.update(overrides)
        return self.service.create_draft(**values)

    def _mine(self, order, *, status: int = 1, block_number: int = 420) -> None:
        blob = encode_order_params(order.order_params())
        log = order_created_log(blob, block_number=block_number, log_index=3, tx_hash=TX_HASH)
        self.provider.receipts[TX_HASH] = TransactionReceipt(TX_HASH, status, block_number, [log])

    def test_create_draft_stores_unsigned_order(self) -> None:
        draft = self._draft()
        self.assertIsNotNone(draft.id)
        self.assertEqual(draft.status, OrderStatus.DRAFT)
        self.assertIsNone(draft.order_hash)
        self.assertEqual(draft.handler, HANDLER)
        self.assertEqual(draft.sell_amount, "1000000")

    def test_create_draft_rejects_bad_window(self) -> None:
        with self.assertRaises(OrderFlowError):
            self._draft(end_time=1700000000)
        with self.assertRaises(OrderFlowError):
            self._draft(sell_amount=0)

    def test_prepare_create_requires_linked_external_order(self) -> None:
        draft = self._draft(polymarket_order_hash="0x" + "00" * 32)
        with self.assertRaises(OrderFlowError):
            self.service.prepare_create(draft.id)

    def test_prepare_create_returns_hash_and_salt(self) -> None:
        draft = self._draft()
        tx, order_hash, salt = self.service.prepare_create(draft.id, SALT)
        self.assertIsInstance(tx, TransactionRequest)
        self.assertEqual(tx.selector, CREATE_WITH_CONTEXT.selector_hex)
        self.assertEqual(salt, SALT)
        self.assertEqual(order_hash, conditional_order_hash(HANDLER, SALT, encode_order_params(draft.order_params())))

    def test_prepare_batch_checks_balance_and_adds_approval(self) -> None:
        draft = self._draft()
        prepared = self.service.prepare_batch(draft.id, SALT)
        self.assertEqual(prepared.batch.steps, [STEP_APPROVAL, STEP_MAIN])
        payload = prepared.to_dict()
        self.assertEqual(payload["order_id"], draft.id)
        self.assertEqual(payload["salt"], SALT)
        self.assertTrue(payload["balance"]["is_valid"])
        self.assertEqual(len(payload["transactions"]), 2)

    def test_confirm_creation_promotes_draft_with_uid(self) -> None:
        draft = self._draft()
        self._mine(draft)
        live = self.service.confirm_creation(draft.id, TX_HASH)

        self.assertEqual(live.id, draft.id)
        self.assertEqual(live.status, OrderStatus.LIVE)
        self.assertEqual(live.transaction_hash, TX_HASH)
        self.assertEqual(live.block_number, 420)
        self.assertEqual(live.order_hash, conditional_order_hash(HANDLER, SALT, encode_order_params(draft.order_params())))
        self.assertEqual(live.order_uid, self.calculator.compute_complete_uid(draft.order_params(), OWNER))
        self.assertEqual(live.market_id, "market-1")

        again = self.service.confirm_creation(draft.id, TX_HASH)
        self.assertEqual(again.updated_at, live.updated_at)

        event = decode_log(self.provider.receipts[TX_HASH].logs[0], HANDLER)
        self.assertEqual(self.reconciler.apply(event).outcome, ApplyOutcome.DUPLICATE)
        self.assertEqual(self.storage.status_counts()["live"], 1)

    def test_confirm_creation_rejects_reverted_or_missing_receipt(self) -> None:
        draft = self._draft()
        with self.assertRaises(OrderFlowError):
            self.service.confirm_creation(draft.id, TX_HASH)
        self._mine(draft, status=0)
        with self.assertRaises(OrderFlowError):
            self.service.confirm_creation(draft.id, TX_HASH)
        self.assertEqual(self.storage.get_by_id(draft.id).status, OrderStatus.DRAFT)

    def test_confirm_creation_requires_owner_event(self) -> None:
        draft = self._draft()
        blob = encode_order_params(draft.order_params())
        log = order_created_log(blob, block_number=420, log_index=3, owner="0x" + "99" * 20, tx_hash=TX_HASH)
        self.provider.receipts[TX_HASH] = TransactionReceipt(TX_HASH, 1, 420, [log])
        with self.assertRaises(OrderFlowError):
            self.service.confirm_creation(draft.id, TX_HASH)

    def test_cancel_flow(self) -> None:
        draft = self._draft()
        self._mine(draft)
        live = self.service.confirm_creation(draft.id, TX_HASH)

        tx = self.service.prepare_cancel(live.order_hash, OWNER)
        self.assertEqual(tx.selector, REMOVE.selector_hex)
        self.assertEqual(tx.to, self.config.composable_cow_address.lower())

        batch = self.service.prepare_cancel(live.order_hash, OWNER, as_batch=True)
        self.assertEqual(batch.steps, [STEP_MAIN])

        canceled = self.service.confirm_cancellation(live.order_hash, OWNER)
        self.assertEqual(canceled.status, OrderStatus.CANCELED)
        with self.assertRaises(OrderFlowError):
            self.service.prepare_cancel(live.order_hash, OWNER)
        with self.assertRaises(InvalidTransitionError):
            self.service.confirm_cancellation(live.order_hash, OWNER)

    def test_cancel_unknown_order(self) -> None:
        with self.assertRaises(OrderFlowError):
            self.service.prepare_cancel("0x" + "42" * 32, OWNER)


if __name__ == "__main__":
    unittest.main()
