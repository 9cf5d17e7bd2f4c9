"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.agreement import (
    RoyaltyAgreementShare,
    RoyaltyAgreementVersion,
    RoyaltyChangeHistory,
)
from backend.db.models.asset import Asset
from backend.db.models.ledger import FeeLedgerEntry
from backend.db.models.ownership import OwnershipView
from backend.db.models.snapshot import FeeSnapshot, JobRun

logger = logging.getLogger(__name__)

__all__ = [
    "Asset",
    "FeeLedgerEntry",
    "FeeSnapshot",
    "JobRun",
    "OwnershipView",
    "RoyaltyAgreementShare",
    "RoyaltyAgreementVersion",
    "RoyaltyChangeHistory",
]
