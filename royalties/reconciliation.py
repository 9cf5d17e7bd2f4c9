"""Read-only reconciliation of ledger balances against lifetime fee totals.

Three invariants are checked per asset:

* ``accrual_equals_lifetime``: platform plus earner accruals equal the latest
  snapshot's lifetime total (zero when the asset has no snapshot).
* ``owed_non_negative``: no earner has claimed more than they accrued.
* ``treasury_non_negative``: source claims cover payouts plus withdrawals.

Failures are reported, never corrected. Reports carry no wall-clock fields so
two runs over the same data serialize identically.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Optional, Sequence

from royalties.agreements import get_current_agreement
from royalties.common import RoyaltyDatabase, list_asset_ids, load_asset
from royalties.fee_snapshots import latest_snapshot
from royalties.ledger_store import EarnerBalance, LedgerSummary, LedgerTotals, load_ledger_summary
from royalties.ownership_view import build_ownership_view, load_ownership_view

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvariantResults:
    accrual_equals_lifetime: bool
    owed_non_negative: bool
    treasury_non_negative: bool

    @property
    def all_passed(self) -> bool:
        return self.accrual_equals_lifetime and self.owed_non_negative and self.treasury_non_negative

    def to_payload(self) -> dict[str, bool]:
        return {
            "accrual_equals_lifetime": self.accrual_equals_lifetime,
            "owed_non_negative": self.owed_non_negative,
            "treasury_non_negative": self.treasury_non_negative,
        }


@dataclass(frozen=True)
class DerivedValues:
    lifetime_total: int
    accrual_sum: int
    accrual_gap: int
    treasury_liquid_balance: int
    min_owed: Optional[int]
    negative_owed_earners: tuple[str, ...]

    def to_payload(self) -> dict[str, Any]:
        return {
            "lifetime_total": self.lifetime_total,
            "accrual_sum": self.accrual_sum,
            "accrual_gap": self.accrual_gap,
            "treasury_liquid_balance": self.treasury_liquid_balance,
            "min_owed": self.min_owed,
            "negative_owed_earners": list(self.negative_owed_earners),
        }


@dataclass(frozen=True)
class AssetReconciliation:
    asset_id: int
    totals: LedgerTotals
    invariants: InvariantResults
    derived: DerivedValues
    earners: tuple[EarnerBalance, ...]
    ownership_view_in_sync: bool

    @property
    def has_failures(self) -> bool:
        return not self.invariants.all_passed

    def to_payload(self) -> dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "ledger": self.totals.to_payload(),
            "invariants": self.invariants.to_payload(),
            "derived": self.derived.to_payload(),
            "earners": [
                {
                    "earner_identity": balance.identity,
                    "accrued": balance.accrued,
                    "claimed": balance.claimed,
                    "owed": balance.owed,
                }
                for balance in self.earners
            ],
            "ownership_view_in_sync": self.ownership_view_in_sync,
            "has_failures": self.has_failures,
        }


@dataclass(frozen=True)
class ReconciliationReport:
    assets: tuple[AssetReconciliation, ...]

    @property
    def has_failures(self) -> bool:
        return any(asset.has_failures for asset in self.assets)

    def to_payload(self) -> dict[str, Any]:
        return {
            "has_failures": self.has_failures,
            "assets": [asset.to_payload() for asset in self.assets],
        }


def evaluate_invariants(
    totals: LedgerTotals,
    earners: Sequence[EarnerBalance],
    lifetime_total: int,
) -> tuple[InvariantResults, DerivedValues]:
    """Pure invariant evaluation over already-aggregated ledger data."""
    negative = tuple(sorted(balance.identity for balance in earners if balance.owed < 0))
    treasury = totals.treasury_liquid_balance
    invariants = InvariantResults(
        accrual_equals_lifetime=totals.accrual_sum == lifetime_total,
        owed_non_negative=not negative,
        treasury_non_negative=treasury >= 0,
    )
    derived = DerivedValues(
        lifetime_total=lifetime_total,
        accrual_sum=totals.accrual_sum,
        accrual_gap=lifetime_total - totals.accrual_sum,
        treasury_liquid_balance=treasury,
        min_owed=min((balance.owed for balance in earners), default=None),
        negative_owed_earners=negative,
    )
    return invariants, derived


def _ownership_view_in_sync(
    db: RoyaltyDatabase,
    asset_id: int,
    summary: LedgerSummary,
    lifetime_total: int,
) -> bool:
    agreement = get_current_agreement(db, asset_id)
    stored = load_ownership_view(db, asset_id)
    if agreement is None:
        return stored is None
    if stored is None:
        return False
    expected = build_ownership_view(asset_id, agreement, summary, lifetime_total)
    return stored.agreement_key() == expected.agreement_key()


def _reconcile_in_transaction(db: RoyaltyDatabase, asset_id: int) -> AssetReconciliation:
    snapshot = latest_snapshot(db, asset_id)
    lifetime_total = 0 if snapshot is None else snapshot.lifetime_fees_after
    summary = load_ledger_summary(db, asset_id)
    invariants, derived = evaluate_invariants(summary.totals, summary.earners, lifetime_total)
    result = AssetReconciliation(
        asset_id=asset_id,
        totals=summary.totals,
        invariants=invariants,
        derived=derived,
        earners=summary.earners,
        ownership_view_in_sync=_ownership_view_in_sync(db, asset_id, summary, lifetime_total),
    )
    if result.has_failures:
        logger.warning("Reconciliation failed for asset %s: %s", asset_id, invariants.to_payload())
    return result


def _set_read_only_snapshot(db: RoyaltyDatabase) -> None:
    db.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY", {})


def reconcile_asset(db: RoyaltyDatabase, asset_id: int) -> AssetReconciliation:
    db.begin()
    try:
        _set_read_only_snapshot(db)
        load_asset(db, asset_id)
        return _reconcile_in_transaction(db, asset_id)
    finally:
        db.rollback()


def build_reconciliation_report(db: RoyaltyDatabase, asset_id: Optional[int] = None) -> ReconciliationReport:
    """Reconcile one asset or every asset from a single consistent read."""
    db.begin()
    try:
        _set_read_only_snapshot(db)
        if asset_id is not None:
            load_asset(db, asset_id)
            targets = [asset_id]
        else:
            targets = list_asset_ids(db)
        results = tuple(_reconcile_in_transaction(db, target) for target in sorted(targets))
    finally:
        db.rollback()
    report = ReconciliationReport(assets=results)
    logger.info(
        "Reconciled %d assets (has_failures=%s).",
        len(results),
        report.has_failures,
    )
    return report
