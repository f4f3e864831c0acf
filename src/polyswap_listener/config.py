from __future__ import annotations

from dataclasses import dataclass
import os
import re


ZERO_BYTES32 = "0x" + ("00" * 32)

POLYGON_CHAIN_ID = 137
DEFAULT_COMPOSABLE_COW = "0xfdaFc9d1902f4e0b84f65F49f244b32b31013b74"
DEFAULT_SETTLEMENT = "0x9008D19f58AAbD9eD0D60971565AA8510560ab41"
DEFAULT_ORDER_HASH_CALCULATOR = "0x3f4DE99433993f58dDaD05776A9DfF90974995B6"
DEFAULT_VALUE_FACTORY = "0x52eD56Da04309Aca4c3FECC595298d80C2f16BAc"
DEFAULT_FALLBACK_HANDLER = "0x2f55e8b20D0B9FEFA187AA7d00B6Cbe563605bF5"
DEFAULT_CTF_ADDRESS = "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_BYTES32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class ListenerConfig:
    rpc_url: str
    chain_id: int
    rpc_timeout_seconds: float
    database_path: str

    handler_address: str
    composable_cow_address: str
    settlement_address: str
    order_hash_calculator_address: str
    value_factory_address: str
    fallback_handler_address: str
    domain_verifier_address: str
    spender_address: str
    app_data: str

    starting_block: int
    batch_size: int
    poll_interval_seconds: float
    backfill_pause_seconds: float
    reconnect_delay_seconds: float
    reconnect_retry_seconds: float
    max_range_attempts: int

    clob_url: str
    data_api_url: str
    ctf_address: str
    poly_private_key: str
    poly_proxy_address: str
    poly_signature_type: int | None
    position_sell_interval_seconds: float
    position_sell_discount: float
    position_scan_blocks: int

    log_level: str

    @property
    def seller_enabled(self) -> bool:
        return bool(self.poly_private_key)

    def validate(self) -> None:
        if not self.rpc_url:
            raise ConfigError("RPC_URL is required")
        if self.chain_id <= 0:
            raise ConfigError(f"invalid CHAIN_ID={self.chain_id}")
        if not self.handler_address:
            raise ConfigError("POLYSWAP_HANDLER is required")
        for name in (
            "handler_address",
            "composable_cow_address",
            "settlement_address",
            "order_hash_calculator_address",
            "value_factory_address",
            "fallback_handler_address",
            "domain_verifier_address",
            "spender_address",
            "ctf_address",
        ):
            value = getattr(self, name)
            if not _ADDRESS_RE.match(value):
                raise ConfigError(f"{name} is not a valid address: {value!r}")
        if not _BYTES32_RE.match(self.app_data):
            raise ConfigError(f"APP_DATA must be a 32-byte hex value: {self.app_data!r}")
        if self.batch_size <= 0:
            raise ConfigError("BATCH_SIZE must be > 0")
        if self.poll_interval_seconds <= 0:
            raise ConfigError("POLL_INTERVAL_SECONDS must be > 0")
        if self.max_range_attempts <= 0:
            raise ConfigError("MAX_RANGE_ATTEMPTS must be > 0")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def load_config() -> ListenerConfig:
    raw_signature_type = os.getenv("POLY_SIGNATURE_TYPE", "").strip()
    parsed_signature_type: int | None = None
    if raw_signature_type:
        try:
            parsed_signature_type = int(raw_signature_type)
        except ValueError:
            parsed_signature_type = None

    composable_cow = os.getenv("COMPOSABLE_COW", DEFAULT_COMPOSABLE_COW).strip()
    return ListenerConfig(
        rpc_url=os.getenv("RPC_URL", "").strip(),
        chain_id=_env_int("CHAIN_ID", POLYGON_CHAIN_ID),
        rpc_timeout_seconds=_env_float("RPC_TIMEOUT_SECONDS", 30.0),
        database_path=os.getenv("BOT_DB_PATH", "data/polyswap.db"),
        handler_address=os.getenv("POLYSWAP_HANDLER", "").strip(),
        composable_cow_address=composable_cow,
        settlement_address=os.getenv("GPV2_SETTLEMENT", DEFAULT_SETTLEMENT).strip(),
        order_hash_calculator_address=os.getenv(
            "ORDER_HASH_CALCULATOR", DEFAULT_ORDER_HASH_CALCULATOR
        ).strip(),
        value_factory_address=os.getenv("VALUE_FACTORY", DEFAULT_VALUE_FACTORY).strip(),
        fallback_handler_address=os.getenv(
            "EXTENSIBLE_FALLBACK_HANDLER", DEFAULT_FALLBACK_HANDLER
        ).strip(),
        # ComposableCoW verifies signatures for the CoW domain.
        domain_verifier_address=os.getenv("DOMAIN_VERIFIER", composable_cow).strip(),
        spender_address=os.getenv("SPENDER", composable_cow).strip(),
        app_data=os.getenv("APP_DATA", ZERO_BYTES32).strip().lower(),
        starting_block=max(0, _env_int("STARTING_BLOCK", 0)),
        batch_size=_env_int("BATCH_SIZE", 100),
        poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 3.0),
        backfill_pause_seconds=_env_float("BACKFILL_PAUSE_SECONDS", 0.1),
        reconnect_delay_seconds=_env_float("RECONNECT_DELAY_SECONDS", 5.0),
        reconnect_retry_seconds=_env_float("RECONNECT_RETRY_SECONDS", 30.0),
        max_range_attempts=_env_int("MAX_RANGE_ATTEMPTS", 5),
        clob_url=os.getenv("CLOB_URL", "https://clob.polymarket.com"),
        data_api_url=os.getenv("DATA_API_URL", "https://data-api.polymarket.com"),
        ctf_address=os.getenv("CTF_ADDRESS", DEFAULT_CTF_ADDRESS).strip(),
        poly_private_key=os.getenv("POLY_PRIVATE_KEY", os.getenv("PRIVATE_KEY", "")),
        poly_proxy_address=os.getenv("POLY_PROXY_ADDRESS", ""),
        poly_signature_type=parsed_signature_type,
        position_sell_interval_seconds=60.0 * _env_float("POSITION_SELL_INTERVAL_MINUTES", 5.0),
        position_sell_discount=_env_float("POSITION_SELL_DISCOUNT", 0.95),
        position_scan_blocks=_env_int("POSITION_SCAN_BLOCKS", 1000),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    )
