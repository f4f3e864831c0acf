from __future__ import annotations

import argparse
import json
import logging
import signal
from typing import Any, Callable, Iterable

from polyswap_listener.batch import BatchTransaction, BatchTransactionBuilder, InsufficientBalanceError
from polyswap_listener.config import ConfigError, ListenerConfig, load_config
from polyswap_listener.encoding import TransactionEncoder
from polyswap_listener.listener import ChainListener
from polyswap_listener.order_uid import OrderHashError, OrderUidCalculator, compute_order_uid
from polyswap_listener.orders import OrderService
from polyswap_listener.positions import ClobExchange, PositionSeller
from polyswap_listener.provider import NodeProvider, ProviderError
from polyswap_listener.reconciler import OrderReconciler
from polyswap_listener.scheduler import IntervalScheduler
from polyswap_listener.storage import Storage

LOGGER = logging.getLogger("polyswap_listener")


class ListenerRuntime:
    def __init__(self, config: ListenerConfig, *, with_seller: bool = True) -> None:
        self.config = config
        self.storage = Storage(config.database_path)
        self.provider = NodeProvider(
            config.rpc_url,
            chain_id=config.chain_id,
            timeout_seconds=config.rpc_timeout_seconds,
        )
        self.scheduler = IntervalScheduler()
        self.reconciler = OrderReconciler(self.storage)
        self.calculator = OrderUidCalculator(self.provider, config.order_hash_calculator_address)
        self.listener = ChainListener(
            config,
            self.provider,
            self.storage,
            self.reconciler,
            self.calculator,
            scheduler=self.scheduler,
        )
        self.encoder = TransactionEncoder(config)
        self.builder = BatchTransactionBuilder(config, self.provider)
        self.orders = OrderService(
            config,
            self.storage,
            self.provider,
            self.calculator,
            self.encoder,
            self.builder,
            self.reconciler,
        )
        self.seller: PositionSeller | None = None
        if with_seller and config.seller_enabled:
            self.seller = PositionSeller(config, self.provider, self.storage, ClobExchange(config))

    def preflight(self) -> None:
        self.config.validate()
        try:
            head = self.provider.check_connection()
        except ProviderError as exc:
            raise RuntimeError(f"node provider unavailable: {exc}") from exc
        LOGGER.info("preflight_ok chain_id=%s head=%s", self.config.chain_id, head)

    def run(self) -> None:
        self.listener.start()
        if self.seller is not None:
            self.scheduler.every(
                self.config.position_sell_interval_seconds,
                self.seller.run_once,
                name="position-sell",
            )
        self.scheduler.run()

    def stop(self) -> None:
        self.listener.stop()
        self.scheduler.stop()

    def close(self) -> None:
        self.storage.close()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("httpx", "httpcore", "urllib3", "web3"):
        logging.getLogger(noisy).setLevel(logging.ERROR)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _with_runtime(
    args: argparse.Namespace,
    action: Callable[[ListenerRuntime, argparse.Namespace], Any],
    *,
    needs_chain: bool = True,
    with_seller: bool = False,
) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    runtime = ListenerRuntime(config, with_seller=with_seller)
    try:
        if needs_chain:
            runtime.preflight()
        payload = action(runtime, args)
        if payload is not None:
            _print_json(payload)
        return 0
    except InsufficientBalanceError as exc:
        LOGGER.error("insufficient balance: %s", exc)
        _print_json({"error": "insufficient_balance", **exc.check.to_dict()})
        return 2
    except Exception as exc:
        LOGGER.error("%s failed: %s", args.command, exc)
        return 2
    finally:
        runtime.close()


def _run_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    runtime = ListenerRuntime(config, with_seller=not args.no_seller)
    try:
        runtime.preflight()
    except Exception as exc:
        LOGGER.error("Preflight failed: %s", exc)
        runtime.close()
        return 2
    LOGGER.info(
        "Starting listener chain_id=%s registry=%s settlement=%s seller=%s",
        config.chain_id,
        config.composable_cow_address,
        config.settlement_address,
        runtime.seller is not None,
    )
    signal_count = {"count": 0}

    def _handle_signal(signum: int, _frame: object) -> None:
        signal_count["count"] += 1
        if signal_count["count"] >= 2:
            LOGGER.error("Received signal %s again, forcing exit now", signum)
            raise SystemExit(130)
        LOGGER.warning("Received signal %s, stopping listener (press Ctrl+C again to force-exit)", signum)
        runtime.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    try:
        runtime.run()
        return 0
    except Exception as exc:
        LOGGER.error("Fatal runtime error: %s", exc)
        return 2
    finally:
        runtime.close()


def _backfill(runtime: ListenerRuntime, args: argparse.Namespace) -> dict[str, Any]:
    result = runtime.listener.start(poll=False)
    runtime.listener.stop()
    return result.to_dict()


def _replay_range(runtime: ListenerRuntime, args: argparse.Namespace) -> list[dict[str, Any]]:
    if args.to_block < args.from_block:
        raise ValueError("--to-block must be >= --from-block")
    outcomes = runtime.listener.replay_range(args.from_block, args.to_block)
    return [
        {
            "range": str(outcome.block_range),
            "status": outcome.status.value,
            "events": outcome.events,
            "decode_errors": outcome.decode_errors,
            "error": outcome.error,
        }
        for outcome in outcomes
    ]


def _populate_uids(runtime: ListenerRuntime, args: argparse.Namespace) -> dict[str, int]:
    return runtime.listener.update_order_uids()


def _verify_uid(runtime: ListenerRuntime, args: argparse.Namespace) -> list[dict[str, Any]]:
    if args.order_hash:
        order = runtime.storage.get_by_hash(args.order_hash)
        orders = [order] if order is not None else []
    else:
        orders = runtime.storage.get_live_orders()
    rows = []
    for order in orders:
        row: dict[str, Any] = {
            "id": order.id,
            "owner": order.owner,
            "order_hash": order.order_hash,
            "stored_uid": order.order_uid,
        }
        try:
            digest = runtime.calculator.compute_order_hash(order.order_params())
            computed = compute_order_uid(digest, order.owner, order.end_time)
            row["computed_uid"] = computed
            row["match"] = computed == (order.order_uid or "")
        except OrderHashError as exc:
            row["error"] = str(exc)
            row["match"] = False
        rows.append(row)
    return rows


def _create_draft(runtime: ListenerRuntime, args: argparse.Namespace) -> dict[str, Any]:
    order = runtime.orders.create_draft(
        owner=args.owner,
        sell_token=args.sell_token,
        buy_token=args.buy_token,
        sell_amount=int(args.sell_amount),
        min_buy_amount=int(args.min_buy_amount),
        start_time=int(args.start_time),
        end_time=int(args.end_time),
        polymarket_order_hash=args.polymarket_order_hash,
        app_data=args.app_data,
        receiver=args.receiver,
        market_id=args.market_id,
        outcome_selected=args.outcome_selected,
    )
    return order.to_dict()


def _create_tx(runtime: ListenerRuntime, args: argparse.Namespace) -> dict[str, Any]:
    tx, order_hash, salt = runtime.orders.prepare_create(args.order_id, args.salt)
    return {"transaction": tx.to_dict(), "order_hash": order_hash, "salt": salt}


def _batch_tx(runtime: ListenerRuntime, args: argparse.Namespace) -> dict[str, Any]:
    return runtime.orders.prepare_batch(args.order_id, args.salt).to_dict()


def _confirm_create(runtime: ListenerRuntime, args: argparse.Namespace) -> dict[str, Any]:
    return runtime.orders.confirm_creation(args.order_id, args.tx_hash).to_dict()


def _cancel_tx(runtime: ListenerRuntime, args: argparse.Namespace) -> dict[str, Any]:
    prepared = runtime.orders.prepare_cancel(args.order_hash, args.owner, as_batch=args.batch)
    if isinstance(prepared, BatchTransaction):
        return prepared.to_dict()
    return {"transaction": prepared.to_dict()}


def _confirm_cancel(runtime: ListenerRuntime, args: argparse.Namespace) -> dict[str, Any]:
    return runtime.orders.confirm_cancellation(args.order_hash, args.owner).to_dict()


def _sell_positions(runtime: ListenerRuntime, args: argparse.Namespace) -> dict[str, Any]:
    if runtime.seller is None:
        raise ConfigError("POLY_PRIVATE_KEY is required to sell positions")
    return runtime.seller.run_once().to_dict()


def _status(runtime: ListenerRuntime, args: argparse.Namespace) -> dict[str, Any]:
    return {
        "cursor": runtime.storage.get_latest_processed_block(),
        "orders": runtime.storage.status_counts(),
        "failed_ranges": runtime.storage.get_failed_ranges(),
        "sold_positions": len(runtime.storage.get_sold_positions()),
    }


def _command(action, *, needs_chain: bool = True, with_seller: bool = False):
    def _handler(args: argparse.Namespace) -> int:
        return _with_runtime(args, action, needs_chain=needs_chain, with_seller=with_seller)

    return _handler


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="polyswap_listener", description="Conditional swap order listener and transaction builder"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Backfill, then poll the chain until stopped")
    run.add_argument("--no-seller", action="store_true", help="Do not start the position seller")
    run.set_defaults(func=_run_command)

    backfill = sub.add_parser("backfill", help="Catch up from the stored cursor to the chain head and exit")
    backfill.set_defaults(func=_command(_backfill))

    replay = sub.add_parser("replay-range", help="Reprocess a block range without moving the cursor")
    replay.add_argument("--from-block", type=int, required=True)
    replay.add_argument("--to-block", type=int, required=True)
    replay.set_defaults(func=_command(_replay_range))

    populate = sub.add_parser("populate-uids", help="Compute order UIDs for live orders missing one")
    populate.set_defaults(func=_command(_populate_uids))

    verify = sub.add_parser("verify-uid", help="Recompute order UIDs and compare with stored values")
    verify.add_argument("--order-hash", default=None)
    verify.set_defaults(func=_command(_verify_uid))

    draft = sub.add_parser("create-draft", help="Record a draft order")
    draft.add_argument("--owner", required=True)
    draft.add_argument("--sell-token", required=True)
    draft.add_argument("--buy-token", required=True)
    draft.add_argument("--sell-amount", required=True)
    draft.add_argument("--min-buy-amount", required=True)
    draft.add_argument("--start-time", type=int, required=True)
    draft.add_argument("--end-time", type=int, required=True)
    draft.add_argument("--polymarket-order-hash", required=True)
    draft.add_argument("--app-data", default=None)
    draft.add_argument("--receiver", default=None, help="Proceeds recipient; defaults to the owner")
    draft.add_argument("--market-id", default=None)
    draft.add_argument("--outcome-selected", type=int, default=None)
    draft.set_defaults(func=_command(_create_draft, needs_chain=False))

    create = sub.add_parser("create-tx", help="Build the create transaction for a draft order")
    create.add_argument("--order-id", type=int, required=True)
    create.add_argument("--salt", default=None)
    create.set_defaults(func=_command(_create_tx, needs_chain=False))

    batch = sub.add_parser("batch-tx", help="Build the full transaction batch for a draft order")
    batch.add_argument("--order-id", type=int, required=True)
    batch.add_argument("--salt", default=None)
    batch.set_defaults(func=_command(_batch_tx))

    confirm = sub.add_parser("confirm-create", help="Promote a draft to live from its creation transaction")
    confirm.add_argument("--order-id", type=int, required=True)
    confirm.add_argument("--tx-hash", required=True)
    confirm.set_defaults(func=_command(_confirm_create))

    cancel = sub.add_parser("cancel-tx", help="Build the remove transaction for a live order")
    cancel.add_argument("--order-hash", required=True)
    cancel.add_argument("--owner", required=True)
    cancel.add_argument("--batch", action="store_true", help="Wrap in a batch with gas estimate")
    cancel.set_defaults(func=_command(_cancel_tx))

    confirm_cancel = sub.add_parser("confirm-cancel", help="Mark a live order canceled")
    confirm_cancel.add_argument("--order-hash", required=True)
    confirm_cancel.add_argument("--owner", required=True)
    confirm_cancel.set_defaults(func=_command(_confirm_cancel, needs_chain=False))

    sell = sub.add_parser("sell-positions", help="Run one position liquidation pass")
    sell.set_defaults(func=_command(_sell_positions, with_seller=True))

    status = sub.add_parser("status", help="Print cursor, order counts and failed ranges")
    status.set_defaults(func=_command(_status, needs_chain=False))
    return parser


def cli(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return int(args.func(args))


def main() -> None:
    raise SystemExit(cli())


if __name__ == "__main__":
    main()
