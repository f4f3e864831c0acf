from __future__ import annotations

from dataclasses import asdict, dataclass, field
import logging
import os
import time
from typing import Any

from polyswap_listener.config import ListenerConfig
from polyswap_listener.contracts import CTF_BALANCE_OF, TRANSFER_SINGLE, pad_topic_address
from polyswap_listener.http_utils import get_json
from polyswap_listener.models import normalize_address

LOGGER = logging.getLogger("polyswap_listener")

CTF_DECIMALS = 6
MIN_SELL_PRICE = 0.01


def parse_float(raw: Any, default: float = 0.0) -> float:
    if raw is None:
        return default
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str) and raw.strip() == "":
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


@dataclass
class Position:
    asset: str
    condition_id: str
    size: float
    cur_price: float
    title: str
    outcome: str
    from_api: bool

    @classmethod
    def from_api_payload(cls, payload: dict[str, Any]) -> "Position":
        return cls(
            asset=str(payload.get("asset") or ""),
            condition_id=str(payload.get("conditionId") or ""),
            size=parse_float(payload.get("size")),
            cur_price=parse_float(payload.get("curPrice")),
            title=str(payload.get("title") or "Unknown"),
            outcome=str(payload.get("outcome") or "Unknown"),
            from_api=True,
        )


@dataclass
class SellReport:
    sold: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[dict[str, str]] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)
    busy: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def merge_positions(api_positions: list[Position], onchain_positions: list[Position]) -> list[Position]:
    """Merge both feeds by asset; on-chain sizes override the feed."""
    merged: dict[str, Position] = {}
    for position in api_positions:
        if position.asset:
            merged[position.asset] = position
    for position in onchain_positions:
        existing = merged.get(position.asset)
        if existing is None:
            merged[position.asset] = position
            continue
        if existing.size != position.size:
            LOGGER.info(
                "position_size_mismatch asset=%s api=%s onchain=%s",
                position.asset[:20],
                existing.size,
                position.size,
            )
            existing.size = position.size
    return list(merged.values())


def skip_reason(position: Position, open_sell_tokens: set[str]) -> str | None:
    if position.size <= 0:
        return "no shares"
    if position.cur_price <= 0 and position.from_api:
        return "price is zero"
    if position.asset in open_sell_tokens:
        return "open sell order exists"
    return None


def sell_price(cur_price: float, midpoint: float | None, discount: float) -> float | None:
    reference = cur_price if cur_price > 0 else (midpoint or 0.0)
    if reference <= 0:
        return None
    return max(MIN_SELL_PRICE, round(reference * discount, 4))


class ClobExchange:
    """Sell-side access to the prediction-market order book through py-clob-client."""

    def __init__(self, config: ListenerConfig) -> None:
        self.config = config
        self.client = None
        self.signer_address = ""
        self.funder_address = ""

    @staticmethod
    def _api_creds_from_env() -> dict[str, str] | None:
        key = (os.getenv("POLY_CLOB_API_KEY") or os.getenv("POLY_API_KEY") or "").strip()
        secret = (os.getenv("POLY_CLOB_API_SECRET") or os.getenv("POLY_API_SECRET") or "").strip()
        passphrase = (os.getenv("POLY_CLOB_API_PASSPHRASE") or os.getenv("POLY_API_PASSPHRASE") or "").strip()
        if key and secret and passphrase:
            return {"key": key, "secret": secret, "passphrase": passphrase}
        return None

    def _signature_type(self, signer_address: str, funder_address: str) -> int:
        if self.config.poly_signature_type is not None:
            return int(self.config.poly_signature_type)
        if funder_address.lower() != signer_address.lower():
            return 2
        return 0

    def bootstrap(self) -> None:
        if self.client is not None:
            return
        if not self.config.poly_private_key:
            raise RuntimeError("Missing POLY_PRIVATE_KEY for position selling")
        try:
            from py_clob_client.client import ClobClient as PyClobClient  # type: ignore
        except Exception as exc:  # pragma: no cover - runtime dependency path
            raise RuntimeError(
                "py-clob-client is required for position selling. Install it with `pip install py-clob-client`."
            ) from exc
        from eth_account import Account

        signer_address = Account.from_key(self.config.poly_private_key).address
        funder_address = self.config.poly_proxy_address.strip() or signer_address
        client = PyClobClient(
            host=self.config.clob_url,
            key=self.config.poly_private_key,
            chain_id=self.config.chain_id,
            signature_type=self._signature_type(signer_address, funder_address),
            funder=funder_address,
        )
        try:
            creds = client.create_or_derive_api_creds()
        except Exception as exc:
            creds = self._api_creds_from_env()
            if creds is None:
                raise RuntimeError(f"Unable to derive CLOB API credentials signer={signer_address}: {exc}") from exc
            LOGGER.warning("Using CLOB API creds from environment fallback after derive failure")
        client.set_api_creds(creds)
        self.client = client
        self.signer_address = signer_address
        self.funder_address = funder_address
        LOGGER.info("clob_auth signer=%s funder=%s", signer_address, funder_address)

    @property
    def wallet(self) -> str:
        self.bootstrap()
        return self.funder_address

    def open_sell_token_ids(self) -> set[str]:
        self.bootstrap()
        from py_clob_client.clob_types import OpenOrderParams  # type: ignore

        orders = self.client.get_orders(OpenOrderParams()) or []
        return {
            str(order.get("asset_id"))
            for order in orders
            if isinstance(order, dict) and str(order.get("side", "")).upper() == "SELL"
        }

    def midpoint(self, token_id: str) -> float:
        self.bootstrap()
        payload = self.client.get_midpoint(token_id)
        if isinstance(payload, dict):
            return parse_float(payload.get("mid"))
        return parse_float(payload)

    def place_sell(self, token_id: str, price: float, size: float) -> str:
        self.bootstrap()
        from py_clob_client.clob_types import OrderArgs, OrderType  # type: ignore

        signed_order = self.client.create_order(
            OrderArgs(price=float(price), size=float(size), side="SELL", token_id=token_id)
        )
        response = self.client.post_order(signed_order, OrderType.GTC)
        payload = response if isinstance(response, dict) else {}
        order_id = payload.get("orderID") or payload.get("orderId") or payload.get("id")
        if not order_id:
            raise RuntimeError(f"sell order rejected token={token_id} response={payload}")
        return str(order_id)


class PositionSeller:
    def __init__(self, config: ListenerConfig, provider, storage, exchange, wallet: str | None = None) -> None:
        self.config = config
        self.provider = provider
        self.storage = storage
        self.exchange = exchange
        self._wallet = wallet
        self._selling = False

    @property
    def wallet(self) -> str:
        if not self._wallet:
            self._wallet = normalize_address(self.exchange.wallet)
        return self._wallet

    def fetch_api_positions(self) -> list[Position]:
        url = self.config.data_api_url.rstrip("/") + "/positions"
        payload = get_json(url, params={"user": self.wallet})
        if not isinstance(payload, list):
            LOGGER.warning("positions_feed_unexpected type=%s", type(payload).__name__)
            return []
        return [Position.from_api_payload(row) for row in payload if isinstance(row, dict)]

    def onchain_balance(self, token_id: str) -> int:
        result = self.provider.call(self.config.ctf_address, CTF_BALANCE_OF.encode(self.wallet, int(token_id)))
        (balance,) = CTF_BALANCE_OF.decode_output(result)
        return int(balance)

    def scan_onchain_positions(self) -> list[Position]:
        head = self.provider.get_block_number()
        from_block = max(0, head - self.config.position_scan_blocks)
        logs = self.provider.get_logs(
            self.config.ctf_address,
            [TRANSFER_SINGLE.topic_hex, None, None, pad_topic_address(self.wallet)],
            from_block,
            head,
        )
        token_ids: list[str] = []
        for log in logs:
            token_id, _value = TRANSFER_SINGLE.decode_data(log.data)
            if str(token_id) not in token_ids:
                token_ids.append(str(token_id))
        positions = []
        for token_id in token_ids:
            balance = self.onchain_balance(token_id)
            if balance <= 0:
                continue
            positions.append(
                Position(
                    asset=token_id,
                    condition_id="",
                    size=balance / 10**CTF_DECIMALS,
                    cur_price=0.0,
                    title=f"Token {token_id[:20]}...",
                    outcome=f"Token {token_id[:10]}...",
                    from_api=False,
                )
            )
        return positions

    def run_once(self) -> SellReport:
        if self._selling:
            LOGGER.info("position_sell_busy")
            return SellReport(busy=True)
        self._selling = True
        started = time.time()
        try:
            return self._sell_all()
        finally:
            self._selling = False
            LOGGER.info("position_sell_done elapsed=%.1fs", time.time() - started)

    def _sell_all(self) -> SellReport:
        report = SellReport()
        api_positions: list[Position] = []
        try:
            api_positions = self.fetch_api_positions()
        except Exception as exc:
            LOGGER.warning("positions_feed_failed error=%s", exc)
        onchain_positions: list[Position] = []
        try:
            onchain_positions = self.scan_onchain_positions()
        except Exception as exc:
            LOGGER.warning("onchain_scan_failed error=%s", exc)
        positions = merge_positions(api_positions, onchain_positions)
        if not positions:
            return report
        open_sell_tokens = self.exchange.open_sell_token_ids()

        for position in positions:
            reason = skip_reason(position, open_sell_tokens)
            if reason is not None:
                report.skipped.append({"asset": position.asset, "reason": reason})
                continue
            try:
                self._sell(position, report)
            except Exception as exc:
                LOGGER.error("position_sell_failed asset=%s error=%s", position.asset, exc)
                report.failed.append({"asset": position.asset, "error": str(exc)})
        return report

    def _sell(self, position: Position, report: SellReport) -> None:
        balance = self.onchain_balance(position.asset)
        if balance <= 0:
            report.skipped.append({"asset": position.asset, "reason": "no on-chain balance"})
            return
        size = balance / 10**CTF_DECIMALS
        midpoint = None if position.cur_price > 0 else self.exchange.midpoint(position.asset)
        price = sell_price(position.cur_price, midpoint, self.config.position_sell_discount)
        if price is None:
            report.skipped.append({"asset": position.asset, "reason": "no price"})
            return
        order_id = self.exchange.place_sell(position.asset, price, size)
        LOGGER.info(
            "position_sold asset=%s outcome=%s size=%.2f price=%.3f order_id=%s",
            position.asset[:20],
            position.outcome,
            size,
            price,
            order_id,
        )
        sale = {"asset": position.asset, "size": size, "price": price, "order_id": order_id}
        report.sold.append(sale)
        try:
            self.storage.record_sold_position(
                asset_id=position.asset,
                condition_id=position.condition_id,
                size=size,
                sell_price=price,
                current_price=position.cur_price,
                order_id=order_id,
                market_title=position.title,
                outcome=position.outcome,
            )
        except Exception as exc:
            LOGGER.warning("sold_position_audit_failed order_id=%s error=%s", order_id, exc)
