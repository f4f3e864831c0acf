from __future__ import annotations

import logging
from typing import Iterator

from polyswap_listener.config import ListenerConfig
from polyswap_listener.contracts import CONDITIONAL_ORDER_CREATED, ORDER_INVALIDATED, TRADE
from polyswap_listener.decoder import decode_log
from polyswap_listener.models import (
    BackfillResult,
    BlockRange,
    DecodeError,
    IgnoredEvent,
    Order,
    OrderCreated,
    RangeOutcome,
    RangeStatus,
    RawLog,
)
from polyswap_listener.order_uid import OrderHashError, OrderUidCalculator
from polyswap_listener.provider import ProviderError
from polyswap_listener.reconciler import ApplyOutcome, OrderReconciler
from polyswap_listener.scheduler import IntervalScheduler, ScheduledJob

LOGGER = logging.getLogger("polyswap_listener")

_RANGE_AHEAD_MARKERS = (
    "from block is greater than latest block",
    "fromblock is greater than toblock",
    "block range extends beyond current head",
)


def iter_ranges(start_block: int, end_block: int, batch_size: int) -> Iterator[BlockRange]:
    current = start_block
    while current <= end_block:
        upper = min(current + batch_size - 1, end_block)
        yield BlockRange(current, upper)
        current = upper + 1


def _is_range_ahead(exc: Exception) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in _RANGE_AHEAD_MARKERS)


def _is_transient(exc: BaseException) -> bool:
    """True when a node failure, not the event itself, broke processing."""
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, ProviderError):
            return "execution reverted" not in str(current).lower()
        current = current.__cause__
    return False


class ChainListener:
    """Backfills then polls the registry and settlement contracts."""

    def __init__(
        self,
        config: ListenerConfig,
        provider,
        storage,
        reconciler: OrderReconciler,
        calculator: OrderUidCalculator,
        scheduler: IntervalScheduler | None = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.storage = storage
        self.reconciler = reconciler
        self.calculator = calculator
        self.scheduler = scheduler or IntervalScheduler()
        self._running = False
        self._stop_requested = False
        self._cursor = 0
        self._poll_job: ScheduledJob | None = None
        self._provider_failures = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def cursor(self) -> int:
        return self._cursor

    def load_cursor(self) -> int:
        stored = self.storage.get_latest_processed_block()
        # Cursor names the last processed block, so the starting block itself is still pending.
        floor = self.config.starting_block - 1
        self._cursor = max(floor, stored if stored is not None else floor)
        return self._cursor

    def start(self, *, poll: bool = True) -> BackfillResult:
        if self._running:
            raise RuntimeError("listener already started")
        self._running = True
        self._stop_requested = False
        self.load_cursor()
        LOGGER.info(
            "listener_start cursor=%s batch_size=%s handler=%s",
            self._cursor,
            self.config.batch_size,
            self.config.handler_address,
        )
        self.update_order_uids()
        result = self.backfill()
        if poll and self._running:
            self._poll_job = self.scheduler.every(
                self.config.poll_interval_seconds,
                self.poll_once,
                name="chain-poll",
                run_immediately=False,
            )
        return result

    def stop(self) -> None:
        self._running = False
        self._stop_requested = True
        if self._poll_job is not None:
            self._poll_job.cancel()
            self._poll_job = None
        LOGGER.info("listener_stop cursor=%s", self._cursor)

    def backfill(self) -> BackfillResult:
        head = self.provider.get_block_number()
        start = self._cursor + 1
        result = BackfillResult(start_block=start, head_block=head, cursor=self._cursor)
        if start > head:
            return result
        LOGGER.info("backfill_start from=%s to=%s", start, head)
        blocked = False
        for block_range in iter_ranges(start, head, self.config.batch_size):
            if self._stop_requested:
                break
            status = self._run_range(block_range, advance=not blocked)
            if status == "ok":
                result.succeeded.append(block_range)
            elif status == "dead":
                result.dead_lettered.append(block_range)
            elif status == "deferred":
                break
            else:
                result.failed.append(block_range)
                blocked = True
                if status == "unavailable":
                    self._handle_provider_failure(f"range {block_range} unavailable")
            if self.scheduler.sleep(self.config.backfill_pause_seconds):
                break
        result.cursor = self._cursor
        LOGGER.info(
            "backfill_done cursor=%s succeeded=%s failed=%s dead=%s",
            result.cursor,
            len(result.succeeded),
            len(result.failed),
            len(result.dead_lettered),
        )
        return result

    def poll_once(self) -> RangeOutcome | None:
        if not self._running:
            return None
        try:
            head = self.provider.get_block_number()
        except ProviderError as exc:
            self._handle_provider_failure(exc)
            return None
        self._provider_failures = 0
        if head <= self._cursor:
            return None
        block_range = BlockRange(self._cursor + 1, min(self._cursor + self.config.batch_size, head))
        outcome = self.process_block_range(block_range)
        if self._settle_range(block_range, outcome, advance=True) == "unavailable":
            self._handle_provider_failure(outcome.error)
        return outcome

    def replay_range(self, from_block: int, to_block: int) -> list[RangeOutcome]:
        """Reprocess blocks without moving the cursor."""
        outcomes = []
        for block_range in iter_ranges(from_block, to_block, self.config.batch_size):
            outcome = self.process_block_range(block_range)
            if outcome.ok:
                self.storage.clear_range_failure(block_range)
            outcomes.append(outcome)
        return outcomes

    def process_block_range(self, block_range: BlockRange) -> RangeOutcome:
        try:
            logs = self._fetch_logs(block_range)
        except ProviderError as exc:
            if _is_range_ahead(exc):
                LOGGER.debug("range_ahead_of_node range=%s", block_range)
                return RangeOutcome(block_range, RangeStatus.DEFERRED, error=str(exc))
            return RangeOutcome(block_range, RangeStatus.UNAVAILABLE, error=str(exc))
        if self._stop_requested:
            return RangeOutcome(block_range, RangeStatus.DEFERRED, error="listener stopped")

        outcome = RangeOutcome(block_range, RangeStatus.OK)
        for log in logs:
            decoded = decode_log(log, self.config.handler_address)
            if isinstance(decoded, IgnoredEvent):
                continue
            if isinstance(decoded, DecodeError):
                outcome.decode_errors += 1
                LOGGER.warning(
                    "decode_error block=%s log=%s tx=%s reason=%s",
                    decoded.block_number,
                    decoded.log_index,
                    decoded.transaction_hash,
                    decoded.reason,
                )
                continue
            try:
                applied = self.reconciler.apply(decoded)
                if isinstance(decoded, OrderCreated) and applied.order is not None:
                    if applied.outcome in (ApplyOutcome.APPLIED, ApplyOutcome.DUPLICATE):
                        self._ensure_uid(applied.order)
            except Exception as exc:
                outcome.status = RangeStatus.UNAVAILABLE if _is_transient(exc) else RangeStatus.FAILED
                outcome.error = f"block={log.block_number} log={log.log_index}: {exc}"
                return outcome
            outcome.events += 1
        return outcome

    def update_order_uids(self) -> dict[str, int]:
        counts = {"updated": 0, "failed": 0}
        for order in self.storage.get_live_orders_missing_uid():
            try:
                self._ensure_uid(order)
                counts["updated"] += 1
            except (OrderHashError, ValueError) as exc:
                counts["failed"] += 1
                LOGGER.warning("uid_update_failed order_hash=%s error=%s", order.order_hash, exc)
        if counts["updated"] or counts["failed"]:
            LOGGER.info("uid_update updated=%s failed=%s", counts["updated"], counts["failed"])
        return counts

    def _ensure_uid(self, order: Order) -> None:
        if order.order_uid or not order.order_hash:
            return
        uid = self.calculator.compute_complete_uid(order.order_params(), order.owner)
        self.storage.update_order_uid(order.order_hash, uid)

    def _fetch_logs(self, block_range: BlockRange) -> list[RawLog]:
        created = self.provider.get_logs(
            self.config.composable_cow_address,
            [CONDITIONAL_ORDER_CREATED.topic_hex],
            block_range.from_block,
            block_range.to_block,
        )
        settled = self.provider.get_logs(
            self.config.settlement_address,
            [[TRADE.topic_hex, ORDER_INVALIDATED.topic_hex]],
            block_range.from_block,
            block_range.to_block,
        )
        return sorted([*created, *settled], key=lambda log: log.position)

    def _run_range(self, block_range: BlockRange, *, advance: bool) -> str:
        outcome = self.process_block_range(block_range)
        return self._settle_range(block_range, outcome, advance=advance)

    def _settle_range(self, block_range: BlockRange, outcome: RangeOutcome, *, advance: bool) -> str:
        if outcome.status == RangeStatus.DEFERRED:
            return "deferred"
        if outcome.status == RangeStatus.UNAVAILABLE:
            LOGGER.warning("range_unavailable range=%s error=%s", block_range, outcome.error)
            return "unavailable"
        if outcome.ok:
            self.storage.clear_range_failure(block_range)
            if advance:
                self._advance_cursor(block_range.to_block)
            if outcome.events or outcome.decode_errors:
                LOGGER.info(
                    "range_processed range=%s events=%s decode_errors=%s",
                    block_range,
                    outcome.events,
                    outcome.decode_errors,
                )
            return "ok"

        attempts = self.storage.record_range_failure(
            block_range, outcome.error, self.config.max_range_attempts
        )
        if attempts >= self.config.max_range_attempts:
            LOGGER.error(
                "range_dead_lettered range=%s attempts=%s error=%s",
                block_range,
                attempts,
                outcome.error,
            )
            if advance:
                self._advance_cursor(block_range.to_block)
            return "dead"
        LOGGER.warning(
            "range_failed range=%s attempt=%s/%s error=%s",
            block_range,
            attempts,
            self.config.max_range_attempts,
            outcome.error,
        )
        return "failed"

    def _advance_cursor(self, block_number: int) -> None:
        if self._stop_requested:
            return
        self._cursor = self.storage.set_processed_block(block_number)

    def _handle_provider_failure(self, exc: Exception | str) -> None:
        self._provider_failures += 1
        LOGGER.warning("provider_failure count=%s error=%s", self._provider_failures, exc)
        delay = self.config.reconnect_delay_seconds
        while self._running:
            if self.scheduler.sleep(delay) or not self._running:
                return
            try:
                self.provider.reconnect()
            except ProviderError as reconnect_exc:
                LOGGER.error(
                    "provider_reconnect_failed retry_in=%ss error=%s",
                    self.config.reconnect_retry_seconds,
                    reconnect_exc,
                )
                delay = self.config.reconnect_retry_seconds
                continue
            LOGGER.info("provider_reconnected cursor=%s", self._cursor)
            return
