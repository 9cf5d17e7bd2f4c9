"""Denormalized per-asset ownership summary, rebuilt wholesale on every write."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import json
import logging
from typing import Any, Mapping, Optional

from royalties.agreements import AgreementVersion, get_current_agreement
from royalties.common import RoyaltyClock, RoyaltyDatabase, acquire_asset_lock, bps_to_percentage, transaction
from royalties.fee_snapshots import latest_snapshot
from royalties.ledger_store import LedgerSummary, load_ledger_summary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OwnershipEarner:
    identity: str
    wallet: Optional[str]
    social_platform: Optional[str]
    social_handle: Optional[str]
    share_bps: int
    percentage: Decimal
    accrued: int
    claimed: int
    owed: int

    def to_json(self) -> dict[str, Any]:
        return {
            "social_or_wallet": self.identity,
            "wallet": self.wallet,
            "social_platform": self.social_platform,
            "social_handle": self.social_handle,
            "share_bps": self.share_bps,
            "percentage": float(self.percentage),
            "accrued": self.accrued,
            "claimed": self.claimed,
            "owed": self.owed,
        }


@dataclass(frozen=True)
class OwnershipView:
    """Read-optimized summary of an asset's current split and balances."""

    asset_id: int
    agreement_version_id: int
    platform_fee_bps: int
    earners: tuple[OwnershipEarner, ...]
    lifetime_fees: int
    platform_accrued: int
    earners_accrued: int
    earners_claimed: int
    treasury_balance: int
    rebuilt_at_utc: Optional[datetime] = None

    def earners_json(self) -> list[dict[str, Any]]:
        return [earner.to_json() for earner in self.earners]

    def content_key(self) -> tuple[Any, ...]:
        """Everything except the rebuild timestamp, for sync comparisons."""
        return (
            self.asset_id,
            self.agreement_version_id,
            self.platform_fee_bps,
            json.dumps(self.earners_json(), sort_keys=True),
            self.lifetime_fees,
            self.platform_accrued,
            self.earners_accrued,
            self.earners_claimed,
            self.treasury_balance,
        )

    def agreement_key(self) -> tuple[Any, ...]:
        """Only the fields derived from the agreement; balances move with every accrual."""
        return (
            self.asset_id,
            self.agreement_version_id,
            self.platform_fee_bps,
            tuple((earner.identity, earner.share_bps) for earner in self.earners),
        )


def parse_identity(identity: str) -> tuple[Optional[str], Optional[str], Optional[str]]:
    """Split an identity into (wallet, social_platform, social_handle)."""
    if ":" in identity:
        platform, handle = identity.split(":", 1)
        return None, platform, handle
    return identity, None, None


def build_ownership_view(
    asset_id: int,
    agreement: AgreementVersion,
    summary: LedgerSummary,
    lifetime_fees: int,
) -> OwnershipView:
    """Map the agreement's shares to display rows enriched with ledger balances."""
    earners = []
    for share in agreement.shares:
        balance = summary.earner(share.earner_identity)
        wallet, social_platform, social_handle = parse_identity(share.earner_identity)
        earners.append(
            OwnershipEarner(
                identity=share.earner_identity,
                wallet=wallet,
                social_platform=social_platform,
                social_handle=social_handle,
                share_bps=share.share_bps,
                percentage=bps_to_percentage(share.share_bps),
                accrued=balance.accrued,
                claimed=balance.claimed,
                owed=balance.owed,
            )
        )
    totals = summary.totals
    return OwnershipView(
        asset_id=asset_id,
        agreement_version_id=agreement.agreement_version_id,
        platform_fee_bps=agreement.platform_fee_bps,
        earners=tuple(earners),
        lifetime_fees=lifetime_fees,
        platform_accrued=totals.platform_accrual,
        earners_accrued=totals.earners_accrual,
        earners_claimed=totals.payouts,
        treasury_balance=totals.treasury_liquid_balance,
    )


def compute_ownership_view(db: RoyaltyDatabase, asset_id: int, agreement: AgreementVersion) -> OwnershipView:
    snapshot = latest_snapshot(db, asset_id)
    lifetime = 0 if snapshot is None else snapshot.lifetime_fees_after
    return build_ownership_view(asset_id, agreement, load_ledger_summary(db, asset_id), lifetime)


def project_ownership_view(
    db: RoyaltyDatabase,
    asset_id: int,
    agreement: AgreementVersion,
    *,
    clock: RoyaltyClock,
) -> OwnershipView:
    """Overwrite the asset's single view row; safe to repeat."""
    view = compute_ownership_view(db, asset_id, agreement)
    rebuilt_at = clock.now_utc()
    db.execute(
        """
        INSERT INTO ownership_view (
            asset_id,
            agreement_version_id,
            platform_fee_bps,
            royalty_earners,
            lifetime_fees,
            platform_accrued,
            earners_accrued,
            earners_claimed,
            treasury_balance,
            rebuilt_at_utc
        ) VALUES (
            :asset_id,
            :agreement_version_id,
            :platform_fee_bps,
            CAST(:royalty_earners AS JSONB),
            :lifetime_fees,
            :platform_accrued,
            :earners_accrued,
            :earners_claimed,
            :treasury_balance,
            :rebuilt_at_utc
        )
        ON CONFLICT (asset_id) DO UPDATE SET
            agreement_version_id = EXCLUDED.agreement_version_id,
            platform_fee_bps = EXCLUDED.platform_fee_bps,
            royalty_earners = EXCLUDED.royalty_earners,
            lifetime_fees = EXCLUDED.lifetime_fees,
            platform_accrued = EXCLUDED.platform_accrued,
            earners_accrued = EXCLUDED.earners_accrued,
            earners_claimed = EXCLUDED.earners_claimed,
            treasury_balance = EXCLUDED.treasury_balance,
            rebuilt_at_utc = EXCLUDED.rebuilt_at_utc
        """,
        {
            "asset_id": asset_id,
            "agreement_version_id": view.agreement_version_id,
            "platform_fee_bps": view.platform_fee_bps,
            "royalty_earners": json.dumps(view.earners_json(), sort_keys=True),
            "lifetime_fees": view.lifetime_fees,
            "platform_accrued": view.platform_accrued,
            "earners_accrued": view.earners_accrued,
            "earners_claimed": view.earners_claimed,
            "treasury_balance": view.treasury_balance,
            "rebuilt_at_utc": rebuilt_at,
        },
    )
    logger.info("Rebuilt ownership view for asset %s (agreement %s).", asset_id, view.agreement_version_id)
    return OwnershipView(
        asset_id=view.asset_id,
        agreement_version_id=view.agreement_version_id,
        platform_fee_bps=view.platform_fee_bps,
        earners=view.earners,
        lifetime_fees=view.lifetime_fees,
        platform_accrued=view.platform_accrued,
        earners_accrued=view.earners_accrued,
        earners_claimed=view.earners_claimed,
        treasury_balance=view.treasury_balance,
        rebuilt_at_utc=rebuilt_at,
    )


def refresh_ownership_view(db: RoyaltyDatabase, asset_id: int, *, clock: RoyaltyClock) -> bool:
    """Rebuild the view after a committed ledger write; failures are logged, not raised."""
    try:
        with transaction(db):
            acquire_asset_lock(db, asset_id)
            agreement = get_current_agreement(db, asset_id)
            if agreement is None:
                return False
            project_ownership_view(db, asset_id, agreement, clock=clock)
    except Exception:
        logger.exception("Ownership view refresh failed for asset %s.", asset_id)
        return False
    return True


def _earner_from_json(item: Mapping[str, Any]) -> OwnershipEarner:
    return OwnershipEarner(
        identity=str(item["social_or_wallet"]),
        wallet=item.get("wallet"),
        social_platform=item.get("social_platform"),
        social_handle=item.get("social_handle"),
        share_bps=int(item["share_bps"]),
        percentage=bps_to_percentage(int(item["share_bps"])),
        accrued=int(item["accrued"]),
        claimed=int(item["claimed"]),
        owed=int(item["owed"]),
    )


def load_ownership_view(db: RoyaltyDatabase, asset_id: int) -> Optional[OwnershipView]:
    row = db.fetch_one(
        """
        SELECT
            asset_id,
            agreement_version_id,
            platform_fee_bps,
            royalty_earners,
            lifetime_fees,
            platform_accrued,
            earners_accrued,
            earners_claimed,
            treasury_balance,
            rebuilt_at_utc
        FROM ownership_view
        WHERE asset_id = :asset_id
        """,
        {"asset_id": asset_id},
    )
    if row is None:
        return None
    raw_earners = row["royalty_earners"]
    if isinstance(raw_earners, str):
        raw_earners = json.loads(raw_earners)
    return OwnershipView(
        asset_id=int(row["asset_id"]),
        agreement_version_id=int(row["agreement_version_id"]),
        platform_fee_bps=int(row["platform_fee_bps"]),
        earners=tuple(_earner_from_json(item) for item in raw_earners),
        lifetime_fees=int(row["lifetime_fees"]),
        platform_accrued=int(row["platform_accrued"]),
        earners_accrued=int(row["earners_accrued"]),
        earners_claimed=int(row["earners_claimed"]),
        treasury_balance=int(row["treasury_balance"]),
        rebuilt_at_utc=row["rebuilt_at_utc"],
    )
