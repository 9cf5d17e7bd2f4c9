"""Royalty ledger error taxonomy."""

from __future__ import annotations

from typing import Any, Mapping, Optional


class RoyaltyError(RuntimeError):
    """Base error carrying a structured ``details`` mapping."""

    def __init__(self, message: str, *, details: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})

    def to_payload(self) -> dict[str, Any]:
        """Serialize the error for CLI/JSON output."""
        return {
            "error": type(self).__name__,
            "message": str(self),
            "details": self.details,
        }


class ValidationError(RoyaltyError):
    """Request rejected before any write."""


class NoChangeError(RoyaltyError):
    """Proposed split is identical to the current agreement."""


class ConflictError(RoyaltyError):
    """Concurrent modification detected."""


class NothingOwedError(RoyaltyError):
    """Earner has no positive owed balance to claim."""


class InsufficientTreasuryError(ValidationError):
    """Treasury liquid balance cannot cover the requested outflow."""


class ExternalTransferError(RoyaltyError):
    """External transfer failed or timed out; nothing was recorded."""


class FeeSourceError(RoyaltyError):
    """External fee source was unreachable or returned an unusable total."""


class PersistenceError(RoyaltyError):
    """Store write failed."""

    @property
    def transfer_ref(self) -> Optional[str]:
        """Reference of a completed transfer that still needs recording, if any."""
        value = self.details.get("transfer_ref")
        return None if value is None else str(value)
