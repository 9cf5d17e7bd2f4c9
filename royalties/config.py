"""Environment-backed configuration for the royalty ledger."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Optional


@dataclass(frozen=True)
class RoyaltyConfig:
    """Canonical configuration surface for royalty operations."""

    default_platform_fee_bps: int = 1000
    display_decimals: int = 9
    transfer_base_url: Optional[str] = None
    transfer_api_key: Optional[str] = None
    transfer_timeout_seconds: float = 30.0
    fee_source_base_url: Optional[str] = None
    fee_source_api_key: Optional[str] = None
    fee_source_timeout_seconds: float = 20.0
    enforce_treasury_balance: bool = True
    split_update_conflict_retries: int = 1
    log_level: str = "INFO"


_LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def _read_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or value.strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value.strip()


def _read_optional(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise RuntimeError(f"Invalid boolean value for {name}: {raw}")


def _read_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value for {name}: {raw}") from exc
    return value


def _read_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid float value for {name}: {raw}") from exc
    return value


def load_royalty_config() -> RoyaltyConfig:
    """Load and validate royalty configuration from environment."""
    platform_bps = _read_int("ROYALTY_DEFAULT_PLATFORM_FEE_BPS", 1000)
    if not 0 <= platform_bps <= 10_000:
        raise RuntimeError("ROYALTY_DEFAULT_PLATFORM_FEE_BPS must be within 0..10000")

    display_decimals = _read_int("ROYALTY_DISPLAY_DECIMALS", 9)
    if display_decimals < 0:
        raise RuntimeError("ROYALTY_DISPLAY_DECIMALS must be >= 0")

    transfer_timeout = _read_float("ROYALTY_TRANSFER_TIMEOUT_SECONDS", 30.0)
    fee_source_timeout = _read_float("ROYALTY_FEE_SOURCE_TIMEOUT_SECONDS", 20.0)
    if transfer_timeout <= 0 or fee_source_timeout <= 0:
        raise RuntimeError("Royalty HTTP timeouts must be > 0 seconds")

    retries = _read_int("ROYALTY_SPLIT_UPDATE_CONFLICT_RETRIES", 1)
    if retries < 0:
        raise RuntimeError("ROYALTY_SPLIT_UPDATE_CONFLICT_RETRIES must be >= 0")

    log_level = _read_env("ROYALTY_LOG_LEVEL", "INFO").upper()
    if log_level not in _LOG_LEVELS:
        raise RuntimeError(f"Invalid log level for ROYALTY_LOG_LEVEL: {log_level}")

    return RoyaltyConfig(
        default_platform_fee_bps=platform_bps,
        display_decimals=display_decimals,
        transfer_base_url=_read_optional("ROYALTY_TRANSFER_BASE_URL"),
        transfer_api_key=_read_optional("ROYALTY_TRANSFER_API_KEY"),
        transfer_timeout_seconds=transfer_timeout,
        fee_source_base_url=_read_optional("ROYALTY_FEE_SOURCE_BASE_URL"),
        fee_source_api_key=_read_optional("ROYALTY_FEE_SOURCE_API_KEY"),
        fee_source_timeout_seconds=fee_source_timeout,
        enforce_treasury_balance=_read_bool("ROYALTY_ENFORCE_TREASURY_BALANCE", True),
        split_update_conflict_retries=retries,
        log_level=log_level,
    )


def configure_logging(config: RoyaltyConfig) -> None:
    """Route royalty logs to stderr at the configured level."""
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
