"""Shared database protocol, hashing, locking, and unit helpers."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from hashlib import sha256
import logging
from typing import Any, Iterable, Iterator, Mapping, Optional, Protocol, Sequence

from royalties.errors import ValidationError

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000
PLATFORM_IDENTITY = "platform"


class RoyaltyDatabase(Protocol):
    """Transactional DB protocol used by all royalty components."""

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        """Fetch one row."""

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        """Fetch rows."""

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        """Execute mutation statement."""

    def begin(self) -> None:
        """Start a transaction."""

    def commit(self) -> None:
        """Commit the open transaction."""

    def rollback(self) -> None:
        """Roll back the open transaction."""


@dataclass(frozen=True)
class RoyaltyClock:
    """Injectable UTC clock for deterministic testing."""

    def now_utc(self) -> datetime:
        """Return current UTC timestamp."""
        return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class AssetRef:
    asset_id: int
    name: str
    symbol: str
    contract_address: Optional[str]


def normalize_timestamp(value: datetime) -> str:
    """Normalize timestamps to UTC RFC3339."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def normalize_token(value: Any) -> str:
    """Serialize primitive values deterministically for hashing."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, Decimal):
        return decimal_to_str(value)
    if isinstance(value, datetime):
        return normalize_timestamp(value)
    return str(value)


def stable_hash(tokens: Iterable[Any]) -> str:
    """Compute a stable SHA256 hash over canonical token serialization."""
    preimage = "|".join(normalize_token(token) for token in tokens)
    return sha256(preimage.encode("utf-8")).hexdigest()


def decimal_to_str(value: Decimal) -> str:
    """Canonical decimal serialization."""
    return format(value.normalize(), "f") if value != 0 else "0"


def bps_to_percentage(bps: int) -> Decimal:
    """Convert basis points to a percentage (9000 -> 90)."""
    return Decimal(bps) / Decimal(100)


def to_display_units(amount: int, decimals: int) -> Decimal:
    """Convert smallest-unit integers to display units."""
    return Decimal(amount).scaleb(-decimals)


def asset_lock_key(asset_id: int) -> int:
    """Derive a stable signed 63-bit advisory lock key for one asset."""
    digest = stable_hash(("royalty_asset_lock", asset_id))
    return int(digest[:16], 16) & 0x7FFF_FFFF_FFFF_FFFF


def acquire_asset_lock(db: RoyaltyDatabase, asset_id: int) -> None:
    """Serialize writers on one asset for the rest of the open transaction."""
    db.execute(
        "SELECT pg_advisory_xact_lock(:lock_key)",
        {"lock_key": asset_lock_key(asset_id)},
    )


@contextmanager
def transaction(db: RoyaltyDatabase) -> Iterator[RoyaltyDatabase]:
    """Run a block in one transaction; commit on success, roll back on any error."""
    db.begin()
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise


def load_asset(db: RoyaltyDatabase, asset_id: int) -> AssetRef:
    """Load an asset row or fail with ``ValidationError``."""
    row = db.fetch_one(
        """
        SELECT asset_id, name, symbol, contract_address
        FROM asset
        WHERE asset_id = :asset_id
        """,
        {"asset_id": asset_id},
    )
    if row is None:
        raise ValidationError(f"Unknown asset: {asset_id}", details={"asset_id": asset_id})
    return AssetRef(
        asset_id=int(row["asset_id"]),
        name=str(row["name"]),
        symbol=str(row["symbol"]),
        contract_address=None if row["contract_address"] is None else str(row["contract_address"]),
    )


def list_asset_ids(db: RoyaltyDatabase) -> list[int]:
    """Return all asset ids in ascending order."""
    rows = db.fetch_all("SELECT asset_id FROM asset ORDER BY asset_id ASC", {})
    return [int(row["asset_id"]) for row in rows]
