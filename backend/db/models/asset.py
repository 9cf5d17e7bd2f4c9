"""Asset reference model definitions."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Identity,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base

logger = logging.getLogger(__name__)


class Asset(Base):
    """Tradable asset whose transaction fees are split between platform and earners."""

    __tablename__ = "asset"
    __table_args__ = (
        PrimaryKeyConstraint("asset_id", name="pk_asset"),
        UniqueConstraint("contract_address", name="uq_asset_contract_address"),
        CheckConstraint("length(btrim(name)) > 0", name="ck_asset_name_not_blank"),
        CheckConstraint("length(btrim(symbol)) > 0", name="ck_asset_symbol_not_blank"),
    )

    asset_id: Mapped[int] = mapped_column(
        BigInteger,
        Identity(always=True),
        primary_key=True,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    symbol: Mapped[str] = mapped_column(Text, nullable=False)
    contract_address: Mapped[str | None] = mapped_column(Text)
    created_at_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
