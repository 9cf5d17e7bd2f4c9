"""Denormalized ownership view model definitions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    PrimaryKeyConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base

logger = logging.getLogger(__name__)


class OwnershipView(Base):
    """Rebuild-on-write projection of an asset's current earners and balances."""

    __tablename__ = "ownership_view"
    __table_args__ = (
        PrimaryKeyConstraint("asset_id", name="pk_ownership_view"),
        CheckConstraint(
            "platform_fee_bps >= 0 AND platform_fee_bps <= 10000",
            name="ck_ownership_view_platform_bps_range",
        ),
        CheckConstraint(
            "lifetime_fees >= 0",
            name="ck_ownership_view_lifetime_nonneg",
        ),
    )

    asset_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "asset.asset_id",
            name="fk_ownership_view_asset",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
        primary_key=True,
    )
    agreement_version_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "royalty_agreement_version.agreement_version_id",
            name="fk_ownership_view_agreement_version",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    platform_fee_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    royalty_earners: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=False,
        server_default=text("'[]'::jsonb"),
    )
    lifetime_fees: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_accrued: Mapped[int] = mapped_column(BigInteger, nullable=False)
    earners_accrued: Mapped[int] = mapped_column(BigInteger, nullable=False)
    earners_claimed: Mapped[int] = mapped_column(BigInteger, nullable=False)
    treasury_balance: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rebuilt_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
