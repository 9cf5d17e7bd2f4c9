"""PostgreSQL native enum contracts for the royalty ledger schema."""

from __future__ import annotations

import enum
import logging

from sqlalchemy.dialects.postgresql import ENUM as PGEnum

logger = logging.getLogger(__name__)


class LedgerEntryType(str, enum.Enum):
    """Economic event recorded in the fee ledger."""

    ACCRUAL = "ACCRUAL"
    CLAIM_FROM_SOURCE = "CLAIM_FROM_SOURCE"
    PAYOUT_TO_EARNER = "PAYOUT_TO_EARNER"
    PLATFORM_WITHDRAWAL = "PLATFORM_WITHDRAWAL"


class BeneficiaryKind(str, enum.Enum):
    """Party a ledger entry is booked against."""

    PLATFORM = "PLATFORM"
    EARNER = "EARNER"


class JobRunStatus(str, enum.Enum):
    """Lifecycle status of a snapshot job run."""

    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


ledger_entry_type_enum = PGEnum(LedgerEntryType, name="ledger_entry_type_enum")
beneficiary_kind_enum = PGEnum(BeneficiaryKind, name="beneficiary_kind_enum")
job_run_status_enum = PGEnum(JobRunStatus, name="job_run_status_enum")
