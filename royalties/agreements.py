"""Effective-dated royalty agreement versions and their earner shares."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, Mapping, Optional, Sequence

from royalties.common import BPS_DENOMINATOR, RoyaltyDatabase, bps_to_percentage
from royalties.errors import ConflictError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShareSpec:
    """Earner identity and basis points as submitted."""

    earner_identity: str
    share_bps: int

    @property
    def percentage(self) -> Decimal:
        return bps_to_percentage(self.share_bps)


@dataclass(frozen=True)
class AgreementVersion:
    """One agreement version with its ordered shares."""

    agreement_version_id: int
    asset_id: int
    platform_fee_bps: int
    effective_from_utc: datetime
    effective_to_utc: Optional[datetime]
    created_by: str
    change_reason: str
    shares: tuple[ShareSpec, ...]

    @property
    def is_current(self) -> bool:
        return self.effective_to_utc is None

    def share_map(self) -> dict[str, int]:
        return {share.earner_identity: share.share_bps for share in self.shares}

    def covers(self, ts: datetime) -> bool:
        if ts < self.effective_from_utc:
            return False
        return self.effective_to_utc is None or ts < self.effective_to_utc


def validate_split(platform_bps: int, shares: Sequence[ShareSpec]) -> None:
    """Reject malformed splits; the earner bps must fill exactly ``10000 - platform``."""
    if isinstance(platform_bps, bool) or not isinstance(platform_bps, int):
        raise ValidationError("Platform fee bps must be an integer", details={"platform_fee_bps": platform_bps})
    if not 0 <= platform_bps <= BPS_DENOMINATOR:
        raise ValidationError(
            f"Platform fee bps out of range: {platform_bps}",
            details={"platform_fee_bps": platform_bps},
        )
    if not shares:
        raise ValidationError("At least one royalty share is required")

    seen: set[str] = set()
    for share in shares:
        identity = share.earner_identity.strip()
        if identity == "":
            raise ValidationError("Earner identity must not be blank")
        if identity in seen:
            raise ValidationError(
                f"Duplicate earner identity: {identity}",
                details={"earner_identity": identity},
            )
        seen.add(identity)
        if isinstance(share.share_bps, bool) or not isinstance(share.share_bps, int):
            raise ValidationError(
                f"Share bps must be an integer for {identity}",
                details={"earner_identity": identity},
            )
        if share.share_bps < 0:
            raise ValidationError(
                f"Share bps must be >= 0 for {identity}",
                details={"earner_identity": identity, "share_bps": share.share_bps},
            )

    expected = BPS_DENOMINATOR - platform_bps
    actual = sum(share.share_bps for share in shares)
    if actual != expected:
        raise ValidationError(
            f"Invalid royalty shares total: {actual} bps (earners) vs {expected} bps "
            f"(required = 10000 - platform {platform_bps})",
            details={
                "expected_earner_bps": expected,
                "actual_earner_bps": actual,
                "platform_fee_bps": platform_bps,
            },
        )


def _normalize_shares(shares: Sequence[ShareSpec]) -> tuple[ShareSpec, ...]:
    return tuple(ShareSpec(share.earner_identity.strip(), share.share_bps) for share in shares)


def _version_from_row(row: Mapping[str, Any], shares: tuple[ShareSpec, ...]) -> AgreementVersion:
    return AgreementVersion(
        agreement_version_id=int(row["agreement_version_id"]),
        asset_id=int(row["asset_id"]),
        platform_fee_bps=int(row["platform_fee_bps"]),
        effective_from_utc=row["effective_from_utc"],
        effective_to_utc=row["effective_to_utc"],
        created_by=str(row["created_by"]),
        change_reason=str(row["change_reason"]),
        shares=shares,
    )


def _load_shares(db: RoyaltyDatabase, agreement_version_id: int) -> tuple[ShareSpec, ...]:
    rows = db.fetch_all(
        """
        SELECT earner_identity, share_bps, share_ordinal
        FROM royalty_agreement_share
        WHERE agreement_version_id = :agreement_version_id
        ORDER BY share_ordinal ASC
        """,
        {"agreement_version_id": agreement_version_id},
    )
    return tuple(ShareSpec(str(row["earner_identity"]), int(row["share_bps"])) for row in rows)


_VERSION_COLUMNS = """
    agreement_version_id,
    asset_id,
    platform_fee_bps,
    effective_from_utc,
    effective_to_utc,
    created_by,
    change_reason
"""


def get_current_agreement(db: RoyaltyDatabase, asset_id: int) -> Optional[AgreementVersion]:
    """Return the open-ended version for the asset, or ``None`` before the first split."""
    row = db.fetch_one(
        f"""
        SELECT {_VERSION_COLUMNS}
        FROM royalty_agreement_version
        WHERE asset_id = :asset_id
          AND effective_to_utc IS NULL
        """,
        {"asset_id": asset_id},
    )
    if row is None:
        return None
    version_id = int(row["agreement_version_id"])
    return _version_from_row(row, _load_shares(db, version_id))


def get_agreement_version(db: RoyaltyDatabase, agreement_version_id: int) -> Optional[AgreementVersion]:
    row = db.fetch_one(
        f"""
        SELECT {_VERSION_COLUMNS}
        FROM royalty_agreement_version
        WHERE agreement_version_id = :agreement_version_id
        """,
        {"agreement_version_id": agreement_version_id},
    )
    if row is None:
        return None
    return _version_from_row(row, _load_shares(db, agreement_version_id))


def list_versions(db: RoyaltyDatabase, asset_id: int) -> list[AgreementVersion]:
    """Return every version of the asset ordered by ``effective_from_utc``."""
    rows = db.fetch_all(
        f"""
        SELECT {_VERSION_COLUMNS}
        FROM royalty_agreement_version
        WHERE asset_id = :asset_id
        ORDER BY effective_from_utc ASC, agreement_version_id ASC
        """,
        {"asset_id": asset_id},
    )
    return [
        _version_from_row(row, _load_shares(db, int(row["agreement_version_id"])))
        for row in rows
    ]


def agreement_as_of(db: RoyaltyDatabase, asset_id: int, ts: datetime) -> Optional[AgreementVersion]:
    """Resolve the version whose ``[from, to)`` window contains ``ts``."""
    for version in list_versions(db, asset_id):
        if version.covers(ts):
            return version
    return None


def open_version(
    db: RoyaltyDatabase,
    asset_id: int,
    platform_bps: int,
    shares: Sequence[ShareSpec],
    actor: str,
    *,
    effective_from: datetime,
    reason: str,
) -> int:
    """Insert one open-ended version plus its shares; returns the new version id."""
    validate_split(platform_bps, shares)
    if actor.strip() == "":
        raise ValidationError("Actor must not be blank")
    normalized = _normalize_shares(shares)

    row = db.fetch_one(
        """
        INSERT INTO royalty_agreement_version (
            asset_id,
            platform_fee_bps,
            effective_from_utc,
            effective_to_utc,
            created_by,
            change_reason
        ) VALUES (
            :asset_id,
            :platform_fee_bps,
            :effective_from_utc,
            NULL,
            :created_by,
            :change_reason
        )
        RETURNING agreement_version_id
        """,
        {
            "asset_id": asset_id,
            "platform_fee_bps": platform_bps,
            "effective_from_utc": effective_from,
            "created_by": actor.strip(),
            "change_reason": reason,
        },
    )
    if row is None:
        raise PersistenceError("Agreement version insert returned no id", details={"asset_id": asset_id})
    version_id = int(row["agreement_version_id"])

    params: dict[str, Any] = {"agreement_version_id": version_id}
    clauses: list[str] = []
    for ordinal, share in enumerate(normalized):
        params[f"earner_identity_{ordinal}"] = share.earner_identity
        params[f"share_bps_{ordinal}"] = share.share_bps
        params[f"share_ordinal_{ordinal}"] = ordinal
        clauses.append(
            f"(:agreement_version_id, :earner_identity_{ordinal}, :share_bps_{ordinal}, :share_ordinal_{ordinal})"
        )
    db.execute(
        f"""
        INSERT INTO royalty_agreement_share (
            agreement_version_id,
            earner_identity,
            share_bps,
            share_ordinal
        ) VALUES {", ".join(clauses)}
        """,
        params,
    )
    logger.info(
        "Opened agreement version %s for asset %s with %d shares.",
        version_id,
        asset_id,
        len(normalized),
    )
    return version_id


def close_version(db: RoyaltyDatabase, agreement_version_id: int, at: datetime) -> None:
    """Close an open version at ``at``; zero rows updated means someone else closed it."""
    row = db.fetch_one(
        """
        SELECT agreement_version_id, effective_from_utc, effective_to_utc
        FROM royalty_agreement_version
        WHERE agreement_version_id = :agreement_version_id
        """,
        {"agreement_version_id": agreement_version_id},
    )
    if row is None:
        raise ConflictError(
            f"Agreement version {agreement_version_id} does not exist",
            details={"agreement_version_id": agreement_version_id},
        )
    if at <= row["effective_from_utc"]:
        # Clock skew or a coarse clock; re-reading cannot fix it.
        raise PersistenceError(
            f"Close time must be after effective_from of version {agreement_version_id}",
            details={
                "agreement_version_id": agreement_version_id,
                "effective_from_utc": row["effective_from_utc"].isoformat(),
                "close_at_utc": at.isoformat(),
            },
        )

    closed = db.fetch_one(
        """
        UPDATE royalty_agreement_version
        SET effective_to_utc = :effective_to_utc
        WHERE agreement_version_id = :agreement_version_id
          AND effective_to_utc IS NULL
        RETURNING agreement_version_id
        """,
        {"agreement_version_id": agreement_version_id, "effective_to_utc": at},
    )
    if closed is None:
        raise ConflictError(
            f"Agreement version {agreement_version_id} was already closed",
            details={"agreement_version_id": agreement_version_id},
        )
    logger.info("Closed agreement version %s.", agreement_version_id)
