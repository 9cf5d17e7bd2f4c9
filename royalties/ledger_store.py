"""Append-only fee ledger: entry writes, grouped totals, and earner balances."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Mapping, Optional, Sequence

from backend.db.enums import BeneficiaryKind, LedgerEntryType
from royalties.common import (
    BPS_DENOMINATOR,
    PLATFORM_IDENTITY,
    RoyaltyDatabase,
    acquire_asset_lock,
    load_asset,
    stable_hash,
)
from royalties.errors import InsufficientTreasuryError, ValidationError

logger = logging.getLogger(__name__)

_INFLOW_TYPES: frozenset[str] = frozenset(
    {LedgerEntryType.ACCRUAL.value, LedgerEntryType.CLAIM_FROM_SOURCE.value}
)
_OUTFLOW_TYPES: frozenset[str] = frozenset(
    {LedgerEntryType.PAYOUT_TO_EARNER.value, LedgerEntryType.PLATFORM_WITHDRAWAL.value}
)
_PLATFORM_ONLY_TYPES: frozenset[str] = frozenset(
    {LedgerEntryType.CLAIM_FROM_SOURCE.value, LedgerEntryType.PLATFORM_WITHDRAWAL.value}
)

_ENTRY_COLUMNS: tuple[str, ...] = (
    "asset_id",
    "entry_type",
    "beneficiary_kind",
    "beneficiary_identity",
    "amount",
    "occurred_at_utc",
    "job_run_id",
    "snapshot_id",
    "agreement_version_id",
    "external_ref",
    "reason",
    "created_by",
    "row_hash",
)


@dataclass(frozen=True)
class LedgerEntry:
    """One immutable economic event before insertion."""

    asset_id: int
    entry_type: str
    beneficiary_kind: str
    beneficiary_identity: str
    amount: int
    occurred_at_utc: datetime
    job_run_id: Optional[int] = None
    snapshot_id: Optional[int] = None
    agreement_version_id: Optional[int] = None
    external_ref: Optional[str] = None
    reason: Optional[str] = None
    created_by: Optional[str] = None

    @property
    def row_hash(self) -> str:
        return stable_hash(
            (
                "fee_ledger_entry",
                self.asset_id,
                self.entry_type,
                self.beneficiary_kind,
                self.beneficiary_identity,
                self.amount,
                self.occurred_at_utc,
                self.job_run_id,
                self.snapshot_id,
                self.agreement_version_id,
                self.external_ref,
            )
        )


@dataclass(frozen=True)
class EarnerBalance:
    """Accrued, claimed, and owed amounts for one earner on one asset."""

    identity: str
    accrued: int
    claimed: int

    @property
    def owed(self) -> int:
        return self.accrued - self.claimed


@dataclass(frozen=True)
class LedgerTotals:
    """Per-asset ledger aggregates; outflows are reported as positive magnitudes."""

    platform_accrual: int = 0
    earners_accrual: int = 0
    claimed_total: int = 0
    payouts: int = 0
    platform_withdrawals: int = 0
    entry_count: int = 0

    @property
    def accrual_sum(self) -> int:
        return self.platform_accrual + self.earners_accrual

    @property
    def treasury_liquid_balance(self) -> int:
        return self.claimed_total - self.payouts - self.platform_withdrawals

    def to_payload(self) -> dict[str, int]:
        return {
            "platform_accrual": self.platform_accrual,
            "earners_accrual": self.earners_accrual,
            "claimed_total": self.claimed_total,
            "payouts": self.payouts,
            "platform_withdrawals": self.platform_withdrawals,
            "entry_count": self.entry_count,
        }


@dataclass(frozen=True)
class LedgerSummary:
    """Asset totals plus sorted per-earner balances folded from one grouped read."""

    totals: LedgerTotals
    earners: tuple[EarnerBalance, ...] = field(default_factory=tuple)

    def earner(self, identity: str) -> EarnerBalance:
        for balance in self.earners:
            if balance.identity == identity:
                return balance
        return EarnerBalance(identity=identity, accrued=0, claimed=0)


def validate_entry(entry: LedgerEntry) -> None:
    """Enforce sign and beneficiary rules before the store does."""
    if entry.entry_type in _INFLOW_TYPES:
        if entry.amount < 0:
            raise ValidationError(
                f"{entry.entry_type} amount must be >= 0",
                details={"entry_type": entry.entry_type, "amount": entry.amount},
            )
    elif entry.entry_type in _OUTFLOW_TYPES:
        if entry.amount > 0:
            raise ValidationError(
                f"{entry.entry_type} amount must be <= 0",
                details={"entry_type": entry.entry_type, "amount": entry.amount},
            )
    else:
        raise ValidationError(f"Unsupported ledger entry type: {entry.entry_type}")

    if entry.beneficiary_kind not in {kind.value for kind in BeneficiaryKind}:
        raise ValidationError(f"Unsupported beneficiary kind: {entry.beneficiary_kind}")
    if entry.entry_type == LedgerEntryType.PAYOUT_TO_EARNER.value:
        if entry.beneficiary_kind != BeneficiaryKind.EARNER.value:
            raise ValidationError("PAYOUT_TO_EARNER entries must target an earner")
        if not entry.external_ref:
            raise ValidationError("PAYOUT_TO_EARNER entries require an external reference")
    if entry.entry_type in _PLATFORM_ONLY_TYPES and entry.beneficiary_kind != BeneficiaryKind.PLATFORM.value:
        raise ValidationError(f"{entry.entry_type} entries must target the platform")
    if entry.beneficiary_identity.strip() == "":
        raise ValidationError("Ledger beneficiary identity must not be blank")


def _entry_params(entry: LedgerEntry, suffix: int) -> dict[str, Any]:
    values = {
        "asset_id": entry.asset_id,
        "entry_type": entry.entry_type,
        "beneficiary_kind": entry.beneficiary_kind,
        "beneficiary_identity": entry.beneficiary_identity,
        "amount": entry.amount,
        "occurred_at_utc": entry.occurred_at_utc,
        "job_run_id": entry.job_run_id,
        "snapshot_id": entry.snapshot_id,
        "agreement_version_id": entry.agreement_version_id,
        "external_ref": entry.external_ref,
        "reason": entry.reason,
        "created_by": entry.created_by,
        "row_hash": entry.row_hash,
    }
    return {f"{key}_{suffix}": value for key, value in values.items()}


def _entry_values_clause(suffix: int) -> str:
    placeholders = []
    for column in _ENTRY_COLUMNS:
        if column == "entry_type":
            placeholders.append(f"CAST(:entry_type_{suffix} AS ledger_entry_type_enum)")
        elif column == "beneficiary_kind":
            placeholders.append(f"CAST(:beneficiary_kind_{suffix} AS beneficiary_kind_enum)")
        else:
            placeholders.append(f":{column}_{suffix}")
    return "(" + ", ".join(placeholders) + ")"


def append_entries(db: RoyaltyDatabase, entries: Sequence[LedgerEntry]) -> list[int]:
    """Insert ledger entries with one multi-row statement; returns entry ids in order."""
    if not entries:
        return []
    for entry in entries:
        validate_entry(entry)

    params: dict[str, Any] = {}
    clauses: list[str] = []
    for index, entry in enumerate(entries):
        params.update(_entry_params(entry, index))
        clauses.append(_entry_values_clause(index))

    rows = db.fetch_all(
        f"""
        INSERT INTO fee_ledger_entry ({", ".join(_ENTRY_COLUMNS)})
        VALUES {", ".join(clauses)}
        RETURNING entry_id
        """,
        params,
    )
    entry_ids = [int(row["entry_id"]) for row in rows]
    logger.info("Appended %d ledger entries for asset %s.", len(entry_ids), entries[0].asset_id)
    return entry_ids


def fetch_ledger_groups(db: RoyaltyDatabase, asset_id: int) -> Sequence[Mapping[str, Any]]:
    """Aggregate ledger amounts per (type, kind, identity) for one asset."""
    return db.fetch_all(
        """
        SELECT
            entry_type,
            beneficiary_kind,
            beneficiary_identity,
            SUM(amount) AS amount_total,
            COUNT(*) AS entry_count
        FROM fee_ledger_entry
        WHERE asset_id = :asset_id
        GROUP BY entry_type, beneficiary_kind, beneficiary_identity
        ORDER BY entry_type ASC, beneficiary_kind ASC, beneficiary_identity ASC
        """,
        {"asset_id": asset_id},
    )


def fold_ledger_groups(rows: Sequence[Mapping[str, Any]]) -> LedgerSummary:
    """Fold grouped ledger rows into asset totals and per-earner balances."""
    platform_accrual = 0
    earners_accrual = 0
    claimed_total = 0
    payouts = 0
    platform_withdrawals = 0
    entry_count = 0
    accrued: dict[str, int] = {}
    claimed: dict[str, int] = {}

    for row in rows:
        entry_type = str(row["entry_type"])
        kind = str(row["beneficiary_kind"])
        identity = str(row["beneficiary_identity"])
        amount = int(row["amount_total"])
        entry_count += int(row["entry_count"])

        if entry_type == LedgerEntryType.ACCRUAL.value:
            if kind == BeneficiaryKind.PLATFORM.value:
                platform_accrual += amount
            else:
                earners_accrual += amount
                accrued[identity] = accrued.get(identity, 0) + amount
        elif entry_type == LedgerEntryType.CLAIM_FROM_SOURCE.value:
            claimed_total += amount
        elif entry_type == LedgerEntryType.PAYOUT_TO_EARNER.value:
            payouts += -amount
            claimed[identity] = claimed.get(identity, 0) - amount
        elif entry_type == LedgerEntryType.PLATFORM_WITHDRAWAL.value:
            platform_withdrawals += -amount

    earners = tuple(
        EarnerBalance(identity=identity, accrued=accrued.get(identity, 0), claimed=claimed.get(identity, 0))
        for identity in sorted(set(accrued) | set(claimed))
    )
    totals = LedgerTotals(
        platform_accrual=platform_accrual,
        earners_accrual=earners_accrual,
        claimed_total=claimed_total,
        payouts=payouts,
        platform_withdrawals=platform_withdrawals,
        entry_count=entry_count,
    )
    return LedgerSummary(totals=totals, earners=earners)


def load_ledger_summary(db: RoyaltyDatabase, asset_id: int) -> LedgerSummary:
    return fold_ledger_groups(fetch_ledger_groups(db, asset_id))


def load_ledger_totals(db: RoyaltyDatabase, asset_id: int) -> LedgerTotals:
    return load_ledger_summary(db, asset_id).totals


def list_earner_balances(db: RoyaltyDatabase, asset_id: int) -> tuple[EarnerBalance, ...]:
    """Return every earner that ever accrued or claimed on the asset, sorted by identity."""
    return load_ledger_summary(db, asset_id).earners


def earner_balance(db: RoyaltyDatabase, asset_id: int, earner_identity: str) -> EarnerBalance:
    return load_ledger_summary(db, asset_id).earner(earner_identity)


def split_fee_delta(
    delta: int,
    shares: Sequence[tuple[str, int]],
) -> list[tuple[str, str, int]]:
    """Split a fee delta into (kind, identity, amount) accruals that sum to ``delta``.

    Each earner receives ``floor(delta * bps / 10000)``; the platform absorbs the
    remainder, which covers both its own bps and any rounding dust.
    """
    if delta < 0:
        raise ValidationError("Fee delta must be >= 0", details={"delta": delta})

    allocations: list[tuple[str, str, int]] = []
    distributed = 0
    for identity, bps in shares:
        amount = (delta * bps) // BPS_DENOMINATOR
        if amount > 0:
            allocations.append((BeneficiaryKind.EARNER.value, identity, amount))
            distributed += amount
    platform_amount = delta - distributed
    if platform_amount > 0:
        allocations.insert(0, (BeneficiaryKind.PLATFORM.value, PLATFORM_IDENTITY, platform_amount))
    return allocations


def record_source_claim(
    db: RoyaltyDatabase,
    asset_id: int,
    amount: int,
    *,
    external_ref: str,
    actor: str,
    occurred_at_utc: datetime,
    reason: Optional[str] = None,
) -> int:
    """Book fees pulled from the external venue into the treasury; caller owns the transaction."""
    if amount <= 0:
        raise ValidationError("Source claim amount must be > 0", details={"amount": amount})
    if external_ref.strip() == "":
        raise ValidationError("Source claim requires an external reference")
    load_asset(db, asset_id)
    acquire_asset_lock(db, asset_id)
    entry = LedgerEntry(
        asset_id=asset_id,
        entry_type=LedgerEntryType.CLAIM_FROM_SOURCE.value,
        beneficiary_kind=BeneficiaryKind.PLATFORM.value,
        beneficiary_identity=PLATFORM_IDENTITY,
        amount=amount,
        occurred_at_utc=occurred_at_utc,
        external_ref=external_ref,
        reason=reason,
        created_by=actor,
    )
    return append_entries(db, [entry])[0]


def record_platform_withdrawal(
    db: RoyaltyDatabase,
    asset_id: int,
    amount: int,
    *,
    external_ref: str,
    actor: str,
    occurred_at_utc: datetime,
    reason: Optional[str] = None,
) -> int:
    """Book a platform withdrawal; the treasury must cover it. Caller owns the transaction."""
    if amount <= 0:
        raise ValidationError("Withdrawal amount must be > 0", details={"amount": amount})
    load_asset(db, asset_id)
    acquire_asset_lock(db, asset_id)
    totals = load_ledger_totals(db, asset_id)
    if amount > totals.treasury_liquid_balance:
        raise InsufficientTreasuryError(
            "Treasury liquid balance cannot cover withdrawal",
            details={"amount": amount, "treasury_liquid_balance": totals.treasury_liquid_balance},
        )
    entry = LedgerEntry(
        asset_id=asset_id,
        entry_type=LedgerEntryType.PLATFORM_WITHDRAWAL.value,
        beneficiary_kind=BeneficiaryKind.PLATFORM.value,
        beneficiary_identity=PLATFORM_IDENTITY,
        amount=-amount,
        occurred_at_utc=occurred_at_utc,
        external_ref=external_ref,
        reason=reason,
        created_by=actor,
    )
    return append_entries(db, [entry])[0]
