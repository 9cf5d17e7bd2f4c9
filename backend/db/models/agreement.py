"""Royalty agreement version, share, and change history model definitions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

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
    UniqueConstraint,
    desc,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base

logger = logging.getLogger(__name__)


class RoyaltyAgreementVersion(Base):
    """Effective-dated platform/earner fee split for one asset."""

    __tablename__ = "royalty_agreement_version"
    __table_args__ = (
        PrimaryKeyConstraint("agreement_version_id", name="pk_royalty_agreement_version"),
        UniqueConstraint(
            "asset_id",
            "effective_from_utc",
            name="uq_royalty_agreement_version_asset_effective_from",
        ),
        CheckConstraint(
            "platform_fee_bps >= 0 AND platform_fee_bps <= 10000",
            name="ck_royalty_agreement_version_platform_bps_range",
        ),
        CheckConstraint(
            "effective_to_utc IS NULL OR effective_to_utc > effective_from_utc",
            name="ck_royalty_agreement_version_effective_window",
        ),
        CheckConstraint(
            "length(btrim(created_by)) > 0",
            name="ck_royalty_agreement_version_created_by_not_blank",
        ),
        Index(
            "idx_royalty_agreement_version_asset_effective_from_desc",
            "asset_id",
            desc("effective_from_utc"),
        ),
        Index(
            "uqix_royalty_agreement_version_one_current_per_asset",
            "asset_id",
            unique=True,
            postgresql_where=text("effective_to_utc IS NULL"),
        ),
    )

    agreement_version_id: Mapped[int] = mapped_column(
        BigInteger,
        Identity(always=True),
        primary_key=True,
    )
    asset_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "asset.asset_id",
            name="fk_royalty_agreement_version_asset",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    platform_fee_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    effective_from_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    effective_to_utc: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    change_reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_at_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )


class RoyaltyAgreementShare(Base):
    """One earner's basis-point allocation inside an agreement version."""

    __tablename__ = "royalty_agreement_share"
    __table_args__ = (
        PrimaryKeyConstraint("share_id", name="pk_royalty_agreement_share"),
        UniqueConstraint(
            "agreement_version_id",
            "earner_identity",
            name="uq_royalty_agreement_share_version_earner",
        ),
        UniqueConstraint(
            "agreement_version_id",
            "share_ordinal",
            name="uq_royalty_agreement_share_version_ordinal",
        ),
        CheckConstraint(
            "share_bps >= 0 AND share_bps <= 10000",
            name="ck_royalty_agreement_share_bps_range",
        ),
        CheckConstraint(
            "length(btrim(earner_identity)) > 0",
            name="ck_royalty_agreement_share_identity_not_blank",
        ),
        CheckConstraint(
            "share_ordinal >= 0",
            name="ck_royalty_agreement_share_ordinal_nonneg",
        ),
    )

    share_id: Mapped[int] = mapped_column(
        BigInteger,
        Identity(always=True),
        primary_key=True,
    )
    agreement_version_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "royalty_agreement_version.agreement_version_id",
            name="fk_royalty_agreement_share_version",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    earner_identity: Mapped[str] = mapped_column(Text, nullable=False)
    share_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    share_ordinal: Mapped[int] = mapped_column(Integer, nullable=False)


class RoyaltyChangeHistory(Base):
    """Audit record written once per successful split update."""

    __tablename__ = "royalty_change_history"
    __table_args__ = (
        PrimaryKeyConstraint("change_id", name="pk_royalty_change_history"),
        UniqueConstraint(
            "agreement_version_id",
            name="uq_royalty_change_history_agreement_version",
        ),
        CheckConstraint(
            "fees_at_change >= 0",
            name="ck_royalty_change_history_fees_nonneg",
        ),
        CheckConstraint(
            "length(btrim(changed_by)) > 0",
            name="ck_royalty_change_history_changed_by_not_blank",
        ),
        Index(
            "idx_royalty_change_history_asset_changed_desc",
            "asset_id",
            desc("changed_at_utc"),
        ),
    )

    change_id: Mapped[int] = mapped_column(
        BigInteger,
        Identity(always=True),
        primary_key=True,
    )
    asset_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "asset.asset_id",
            name="fk_royalty_change_history_asset",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    agreement_version_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "royalty_agreement_version.agreement_version_id",
            name="fk_royalty_change_history_version",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    previous_agreement_version_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey(
            "royalty_agreement_version.agreement_version_id",
            name="fk_royalty_change_history_previous_version",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
    )
    platform_fee_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_platform_fee_bps: Mapped[int | None] = mapped_column(Integer)
    new_shares: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False)
    previous_shares: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONB)
    changed_by: Mapped[str] = mapped_column(Text, nullable=False)
    change_reason: Mapped[str] = mapped_column(Text, nullable=False)
    fees_at_change: Mapped[int] = mapped_column(BigInteger, nullable=False)
    changed_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
