"""Fee ledger model definitions."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import (
    CHAR,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import beneficiary_kind_enum, ledger_entry_type_enum

logger = logging.getLogger(__name__)


class FeeLedgerEntry(Base):
    """Immutable fee accrual, source claim, payout, or withdrawal event."""

    __tablename__ = "fee_ledger_entry"
    __table_args__ = (
        PrimaryKeyConstraint("entry_id", name="pk_fee_ledger_entry"),
        UniqueConstraint("row_hash", name="uq_fee_ledger_entry_row_hash"),
        CheckConstraint(
            "(entry_type IN ('ACCRUAL', 'CLAIM_FROM_SOURCE') AND amount >= 0) "
            "OR (entry_type IN ('PAYOUT_TO_EARNER', 'PLATFORM_WITHDRAWAL') AND amount <= 0)",
            name="ck_fee_ledger_entry_amount_sign",
        ),
        CheckConstraint(
            "(entry_type <> 'PAYOUT_TO_EARNER' OR beneficiary_kind = 'EARNER') "
            "AND (entry_type NOT IN ('CLAIM_FROM_SOURCE', 'PLATFORM_WITHDRAWAL') "
            "OR beneficiary_kind = 'PLATFORM')",
            name="ck_fee_ledger_entry_kind_consistency",
        ),
        CheckConstraint(
            "entry_type <> 'PAYOUT_TO_EARNER' OR external_ref IS NOT NULL",
            name="ck_fee_ledger_entry_payout_has_ref",
        ),
        CheckConstraint(
            "length(btrim(beneficiary_identity)) > 0",
            name="ck_fee_ledger_entry_identity_not_blank",
        ),
        Index(
            "idx_fee_ledger_entry_asset_beneficiary",
            "asset_id",
            "beneficiary_kind",
            "beneficiary_identity",
        ),
        Index("idx_fee_ledger_entry_asset_occurred", "asset_id", "occurred_at_utc"),
    )

    entry_id: Mapped[int] = mapped_column(
        BigInteger,
        Identity(always=True),
        primary_key=True,
    )
    asset_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "asset.asset_id",
            name="fk_fee_ledger_entry_asset",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    entry_type: Mapped[str] = mapped_column(ledger_entry_type_enum, nullable=False)
    beneficiary_kind: Mapped[str] = mapped_column(beneficiary_kind_enum, nullable=False)
    beneficiary_identity: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    occurred_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    job_run_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey(
            "job_run.job_run_id",
            name="fk_fee_ledger_entry_job_run",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
    )
    snapshot_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey(
            "fee_snapshot.snapshot_id",
            name="fk_fee_ledger_entry_snapshot",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
    )
    agreement_version_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey(
            "royalty_agreement_version.agreement_version_id",
            name="fk_fee_ledger_entry_agreement_version",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
    )
    external_ref: Mapped[str | None] = mapped_column(Text)
    reason: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(Text)
    row_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)
