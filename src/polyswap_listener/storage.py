from __future__ import annotations

from dataclasses import fields
from pathlib import Path
import sqlite3
from typing import Any

from polyswap_listener.models import (
    BlockRange,
    FillDetail,
    Order,
    OrderParams,
    OrderStatus,
    normalize_address,
    normalize_bytes32,
    utc_now_iso,
)

_CURSOR_KEY = "last_processed_block"

_ORDER_COLUMNS = tuple(f.name for f in fields(Order))


class Storage:
    def __init__(self, database_path: str) -> None:
        self.path = Path(database_path)
        if database_path != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(database_path)
        self.conn.row_factory = sqlite3.Row
        self._create_schema()

    def _create_schema(self) -> None:
        cursor = self.conn.cursor()
        cursor.executescript(
            """
            CREATE TABLE IF NOT EXISTS polyswap_orders (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              order_hash TEXT UNIQUE,
              order_uid TEXT,
              receiver TEXT,
              owner TEXT NOT NULL,
              handler TEXT NOT NULL,
              sell_token TEXT NOT NULL,
              buy_token TEXT NOT NULL,
              sell_amount TEXT NOT NULL,
              min_buy_amount TEXT NOT NULL,
              start_time INTEGER NOT NULL,
              end_time INTEGER NOT NULL,
              polymarket_order_hash TEXT NOT NULL,
              app_data TEXT NOT NULL,
              market_id TEXT,
              outcome_selected INTEGER,
              bet_percentage TEXT,
              block_number INTEGER,
              transaction_hash TEXT,
              log_index INTEGER,
              status TEXT NOT NULL CHECK (status IN ('draft', 'live', 'filled', 'canceled')),
              filled_at TEXT,
              fill_transaction_hash TEXT,
              fill_block_number INTEGER,
              fill_log_index INTEGER,
              actual_sell_amount TEXT,
              actual_buy_amount TEXT,
              fee_amount TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_polyswap_orders_position
              ON polyswap_orders (block_number, log_index)
              WHERE block_number IS NOT NULL;
            CREATE INDEX IF NOT EXISTS idx_polyswap_orders_uid ON polyswap_orders (order_uid);
            CREATE INDEX IF NOT EXISTS idx_polyswap_orders_owner ON polyswap_orders (owner);
            CREATE INDEX IF NOT EXISTS idx_polyswap_orders_status ON polyswap_orders (status);

            CREATE TABLE IF NOT EXISTS listener_state (
              key TEXT PRIMARY KEY,
              value INTEGER NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS failed_ranges (
              from_block INTEGER NOT NULL,
              to_block INTEGER NOT NULL,
              attempts INTEGER NOT NULL,
              status TEXT NOT NULL,
              last_error TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              PRIMARY KEY (from_block)
            );

            CREATE TABLE IF NOT EXISTS sold_positions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              asset_id TEXT NOT NULL,
              condition_id TEXT NOT NULL,
              size REAL NOT NULL,
              sell_price REAL NOT NULL,
              current_price REAL NOT NULL,
              order_id TEXT NOT NULL,
              market_title TEXT NOT NULL,
              outcome TEXT NOT NULL,
              sold_at TEXT NOT NULL
            );
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    @staticmethod
    def _row_to_order(row: sqlite3.Row | None) -> Order | None:
        if row is None:
            return None
        values = {name: row[name] for name in _ORDER_COLUMNS}
        values["status"] = OrderStatus(values["status"])
        return Order(**values)

    def _fetch_one(self, where: str, params: tuple[Any, ...]) -> Order | None:
        row = self.conn.execute(f"SELECT * FROM polyswap_orders WHERE {where} LIMIT 1", params).fetchone()
        return self._row_to_order(row)

    def _fetch_all(self, where: str, params: tuple[Any, ...] = ()) -> list[Order]:
        rows = self.conn.execute(
            f"SELECT * FROM polyswap_orders WHERE {where} ORDER BY id ASC", params
        ).fetchall()
        return [order for order in (self._row_to_order(row) for row in rows) if order is not None]

    def insert_draft(self, order: Order) -> Order:
        if order.status != OrderStatus.DRAFT:
            raise ValueError("drafts must be inserted with status=draft")
        return self._insert(order)

    def _insert(self, order: Order) -> Order:
        now = utc_now_iso()
        values = order.to_dict()
        values.pop("id")
        values["created_at"] = order.created_at or now
        values["updated_at"] = now
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        cursor = self.conn.execute(
            f"INSERT INTO polyswap_orders ({columns}) VALUES ({placeholders})",
            tuple(values.values()),
        )
        self.conn.commit()
        stored = self.get_by_id(int(cursor.lastrowid))
        if stored is None:
            raise RuntimeError(f"order {cursor.lastrowid} vanished after insert")
        return stored

    def upsert_by_hash(self, order: Order) -> Order:
        """Insert a chain-observed order, or merge provenance into a draft with its hash.

        Identity and economic fields of an existing row are left as they are,
        and rows past draft are never touched.
        """
        if not order.order_hash:
            raise ValueError("upsert_by_hash requires order_hash")
        now = utc_now_iso()
        self.conn.execute(
            """
            INSERT INTO polyswap_orders (
              order_hash, order_uid, receiver, owner, handler, sell_token, buy_token,
              sell_amount, min_buy_amount, start_time, end_time,
              polymarket_order_hash, app_data, market_id, outcome_selected, bet_percentage,
              block_number, transaction_hash, log_index, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(order_hash) DO UPDATE SET
              block_number=excluded.block_number,
              transaction_hash=excluded.transaction_hash,
              log_index=excluded.log_index,
              app_data=excluded.app_data,
              order_uid=COALESCE(polyswap_orders.order_uid, excluded.order_uid),
              status=excluded.status,
              updated_at=excluded.updated_at
            WHERE polyswap_orders.status = 'draft'
            """,
            (
                order.order_hash,
                order.order_uid,
                order.receiver,
                order.owner,
                order.handler,
                order.sell_token,
                order.buy_token,
                order.sell_amount,
                order.min_buy_amount,
                order.start_time,
                order.end_time,
                order.polymarket_order_hash,
                order.app_data,
                order.market_id,
                order.outcome_selected,
                order.bet_percentage,
                order.block_number,
                order.transaction_hash,
                order.log_index,
                order.status.value,
                now,
                now,
            ),
        )
        self.conn.commit()
        stored = self.get_by_hash(order.order_hash)
        if stored is None:
            raise RuntimeError(f"order_hash={order.order_hash} missing after upsert")
        return stored

    def promote_draft(
        self,
        order_id: int,
        *,
        order_hash: str,
        order_uid: str | None,
        handler: str,
        params: OrderParams,
        block_number: int,
        transaction_hash: str,
        log_index: int,
    ) -> bool:
        """Move a draft to live with the fields observed on chain.

        Economic fields are taken from ``params``; the created event is
        authoritative over the draft.
        """
        cursor = self.conn.execute(
            """
            UPDATE polyswap_orders
            SET order_hash=?, order_uid=COALESCE(?, order_uid), handler=?,
                sell_token=?, buy_token=?, receiver=?, sell_amount=?, min_buy_amount=?,
                start_time=?, end_time=?, polymarket_order_hash=?, app_data=?,
                block_number=?, transaction_hash=?, log_index=?, status=?, updated_at=?
            WHERE id=? AND status=? AND (order_hash IS NULL OR order_hash=?)
            """,
            (
                order_hash,
                order_uid,
                handler,
                normalize_address(params.sell_token),
                normalize_address(params.buy_token),
                normalize_address(params.receiver),
                str(int(params.sell_amount)),
                str(int(params.min_buy_amount)),
                int(params.start_time),
                int(params.end_time),
                normalize_bytes32(params.polymarket_order_hash),
                normalize_bytes32(params.app_data),
                block_number,
                transaction_hash,
                log_index,
                OrderStatus.LIVE.value,
                utc_now_iso(),
                order_id,
                OrderStatus.DRAFT.value,
                order_hash,
            ),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def get_by_id(self, order_id: int) -> Order | None:
        return self._fetch_one("id = ?", (int(order_id),))

    def get_by_hash(self, order_hash: str) -> Order | None:
        return self._fetch_one("order_hash = ?", (order_hash.lower(),))

    def get_by_hash_and_owner(self, order_hash: str, owner: str) -> Order | None:
        return self._fetch_one("order_hash = ? AND owner = ?", (order_hash.lower(), owner.lower()))

    def get_by_uid(self, order_uid: str) -> Order | None:
        return self._fetch_one("order_uid = ?", (order_uid.lower(),))

    def get_by_position(self, block_number: int, log_index: int) -> Order | None:
        return self._fetch_one("block_number = ? AND log_index = ?", (block_number, log_index))

    def find_draft_for_external_ref(self, owner: str, polymarket_order_hash: str) -> Order | None:
        return self._fetch_one(
            "owner = ? AND polymarket_order_hash = ? AND status = ? AND order_hash IS NULL",
            (owner.lower(), polymarket_order_hash.lower(), OrderStatus.DRAFT.value),
        )

    def get_live_orders(self) -> list[Order]:
        return self._fetch_all("status = ?", (OrderStatus.LIVE.value,))

    def get_live_orders_missing_uid(self) -> list[Order]:
        return self._fetch_all(
            "status = ? AND order_hash IS NOT NULL AND (order_uid IS NULL OR order_uid = '')",
            (OrderStatus.LIVE.value,),
        )

    def update_status(
        self,
        *,
        expected: OrderStatus,
        status: OrderStatus,
        order_id: int | None = None,
        order_hash: str | None = None,
        fill: FillDetail | None = None,
    ) -> bool:
        """Move one order from ``expected`` to ``status``; False when no row matched."""
        if (order_id is None) == (order_hash is None):
            raise ValueError("update_status needs exactly one of order_id or order_hash")
        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status.value, utc_now_iso()]
        if fill is not None:
            assignments += [
                "filled_at = ?",
                "fill_transaction_hash = ?",
                "fill_block_number = ?",
                "fill_log_index = ?",
                "actual_sell_amount = ?",
                "actual_buy_amount = ?",
                "fee_amount = ?",
            ]
            params += [
                fill.filled_at,
                fill.transaction_hash,
                fill.block_number,
                fill.log_index,
                fill.actual_sell_amount,
                fill.actual_buy_amount,
                fill.fee_amount,
            ]
        if order_id is not None:
            where, key = "id = ?", int(order_id)
        else:
            where, key = "order_hash = ?", str(order_hash).lower()
        params += [key, expected.value]
        cursor = self.conn.execute(
            f"UPDATE polyswap_orders SET {', '.join(assignments)} WHERE {where} AND status = ?",
            tuple(params),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def update_order_uid(self, order_hash: str, order_uid: str) -> bool:
        cursor = self.conn.execute(
            "UPDATE polyswap_orders SET order_uid = ?, updated_at = ? WHERE order_hash = ?",
            (order_uid.lower(), utc_now_iso(), order_hash.lower()),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def get_latest_processed_block(self) -> int | None:
        row = self.conn.execute(
            "SELECT value FROM listener_state WHERE key = ?", (_CURSOR_KEY,)
        ).fetchone()
        return None if row is None else int(row["value"])

    def set_processed_block(self, block_number: int) -> int:
        """Raise the cursor to ``block_number``; a lower value leaves it unchanged."""
        self.conn.execute(
            """
            INSERT INTO listener_state (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
              value=MAX(listener_state.value, excluded.value),
              updated_at=excluded.updated_at
            """,
            (_CURSOR_KEY, int(block_number), utc_now_iso()),
        )
        self.conn.commit()
        current = self.get_latest_processed_block()
        if current is None:
            raise RuntimeError("processed-block cursor missing after write")
        return current

    def record_range_failure(self, block_range: BlockRange, error: str, max_attempts: int) -> int:
        """Count one failed attempt for the range starting at ``block_range.from_block``.

        Poll ranges grow with the head, so the entry is keyed on the first block
        and keeps the latest upper bound.
        """
        self.conn.execute(
            """
            INSERT INTO failed_ranges (from_block, to_block, attempts, status, last_error, updated_at)
            VALUES (?, ?, 1, 'pending', ?, ?)
            ON CONFLICT(from_block) DO UPDATE SET
              to_block=excluded.to_block,
              attempts=failed_ranges.attempts + 1,
              last_error=excluded.last_error,
              updated_at=excluded.updated_at
            """,
            (block_range.from_block, block_range.to_block, error[:500], utc_now_iso()),
        )
        self.conn.execute(
            """
            UPDATE failed_ranges SET status='dead'
            WHERE from_block=? AND attempts >= ?
            """,
            (block_range.from_block, int(max_attempts)),
        )
        self.conn.commit()
        row = self.conn.execute(
            "SELECT attempts FROM failed_ranges WHERE from_block=?",
            (block_range.from_block,),
        ).fetchone()
        return int(row["attempts"])

    def clear_range_failure(self, block_range: BlockRange) -> None:
        """Drop every ledger entry that starts inside a range processed successfully."""
        self.conn.execute(
            "DELETE FROM failed_ranges WHERE from_block BETWEEN ? AND ?",
            (block_range.from_block, block_range.to_block),
        )
        self.conn.commit()

    def get_failed_ranges(self, status: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM failed_ranges"
        params: tuple[Any, ...] = ()
        if status:
            query += " WHERE status = ?"
            params = (status,)
        rows = self.conn.execute(query + " ORDER BY from_block ASC", params).fetchall()
        return [dict(row) for row in rows]

    def record_sold_position(
        self,
        *,
        asset_id: str,
        condition_id: str,
        size: float,
        sell_price: float,
        current_price: float,
        order_id: str,
        market_title: str,
        outcome: str,
    ) -> None:
        self.conn.execute(
            """
            INSERT INTO sold_positions (
              asset_id, condition_id, size, sell_price, current_price,
              order_id, market_title, outcome, sold_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                asset_id,
                condition_id,
                float(size),
                float(sell_price),
                float(current_price),
                order_id,
                market_title,
                outcome,
                utc_now_iso(),
            ),
        )
        self.conn.commit()

    def get_sold_positions(self) -> list[dict[str, Any]]:
        rows = self.conn.execute("SELECT * FROM sold_positions ORDER BY id ASC").fetchall()
        return [dict(row) for row in rows]

    def status_counts(self) -> dict[str, int]:
        rows = self.conn.execute(
            "SELECT status, COUNT(*) AS n FROM polyswap_orders GROUP BY status"
        ).fetchall()
        counts = {status.value: 0 for status in OrderStatus}
        for row in rows:
            counts[str(row["status"])] = int(row["n"])
        return counts
