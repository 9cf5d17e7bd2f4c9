"""Job run and fee snapshot model definitions."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    Integer,
    PrimaryKeyConstraint,
    Text,
    desc,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import job_run_status_enum

logger = logging.getLogger(__name__)


class JobRun(Base):
    """Execution record for snapshot jobs, periodic or boundary-forced."""

    __tablename__ = "job_run"
    __table_args__ = (
        PrimaryKeyConstraint("job_run_id", name="pk_job_run"),
        CheckConstraint("length(btrim(job_name)) > 0", name="ck_job_run_name_not_blank"),
        CheckConstraint(
            "finished_at_utc IS NULL OR finished_at_utc >= started_at_utc",
            name="ck_job_run_finished_after_started",
        ),
        CheckConstraint(
            "assets_processed >= 0 AND snapshots_written >= 0",
            name="ck_job_run_counts_nonneg",
        ),
        Index("idx_job_run_name_started_desc", "job_name", desc("started_at_utc")),
    )

    job_run_id: Mapped[int] = mapped_column(
        BigInteger,
        Identity(always=True),
        primary_key=True,
    )
    job_name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(job_run_status_enum, nullable=False)
    started_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at_utc: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    assets_processed: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default=text("0"),
    )
    snapshots_written: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default=text("0"),
    )
    error_detail: Mapped[str | None] = mapped_column(Text)


class FeeSnapshot(Base):
    """Cumulative lifetime fee marker for an asset at one instant."""

    __tablename__ = "fee_snapshot"
    __table_args__ = (
        PrimaryKeyConstraint("snapshot_id", name="pk_fee_snapshot"),
        CheckConstraint(
            "lifetime_fees_after >= 0",
            name="ck_fee_snapshot_lifetime_nonneg",
        ),
        CheckConstraint(
            "length(btrim(source_ref)) > 0",
            name="ck_fee_snapshot_source_ref_not_blank",
        ),
        Index(
            "idx_fee_snapshot_asset_fetched_desc",
            "asset_id",
            desc("fetched_at_utc"),
            desc("snapshot_id"),
        ),
    )

    snapshot_id: Mapped[int] = mapped_column(
        BigInteger,
        Identity(always=True),
        primary_key=True,
    )
    asset_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "asset.asset_id",
            name="fk_fee_snapshot_asset",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    job_run_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "job_run.job_run_id",
            name="fk_fee_snapshot_job_run",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    lifetime_fees_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    source_ref: Mapped[str] = mapped_column(Text, nullable=False)
    fetched_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
