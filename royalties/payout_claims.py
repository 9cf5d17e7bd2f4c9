"""Earner payout claims: transfer first, then record exactly one ledger debit."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import json
import logging
from typing import Any, Callable, Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from backend.db.enums import BeneficiaryKind, LedgerEntryType
from royalties.common import (
    RoyaltyClock,
    RoyaltyDatabase,
    acquire_asset_lock,
    decimal_to_str,
    load_asset,
    stable_hash,
    to_display_units,
)
from royalties.config import RoyaltyConfig
from royalties.errors import (
    ExternalTransferError,
    InsufficientTreasuryError,
    NothingOwedError,
    PersistenceError,
    ValidationError,
)
from royalties.ledger_store import LedgerEntry, append_entries, load_ledger_summary
from royalties.ownership_view import refresh_ownership_view

logger = logging.getLogger(__name__)


class TransferClient(Protocol):
    """External value-transfer mechanism."""

    def transfer(
        self,
        *,
        destination: str,
        amount: int,
        idempotency_key: str,
        timeout_seconds: float,
    ) -> str:
        """Send ``amount`` to ``destination``; return the external transfer reference."""


class HttpTransferClient:
    """Posts transfer requests as JSON; a timeout or non-2xx response is a failure."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str] = None,
        requester: Optional[Callable[[str, dict[str, str], bytes, float], Any]] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._requester = requester

    def _post_json(self, path: str, payload: dict[str, Any], headers: dict[str, str], timeout: float) -> Any:
        body = json.dumps(payload, sort_keys=True).encode("utf-8")
        url = f"{self._base_url}{path}"
        if self._requester is not None:
            return self._requester(url, headers, body, timeout)
        request = Request(url=url, data=body, headers=headers, method="POST")
        with urlopen(request, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8"))

    def transfer(
        self,
        *,
        destination: str,
        amount: int,
        idempotency_key: str,
        timeout_seconds: float,
    ) -> str:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key,
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            response = self._post_json(
                "/transfers",
                {"destination": destination, "amount": amount},
                headers,
                timeout_seconds,
            )
        except (HTTPError, URLError, TimeoutError) as exc:
            raise ExternalTransferError(
                f"Transfer request failed: {exc}",
                details={"destination": destination, "idempotency_key": idempotency_key},
            ) from exc
        transfer_ref = response.get("transfer_ref") if isinstance(response, dict) else None
        if not transfer_ref:
            raise ExternalTransferError(
                "Transfer response did not include a transfer_ref",
                details={"destination": destination, "idempotency_key": idempotency_key},
            )
        return str(transfer_ref)


@dataclass(frozen=True)
class ClaimResult:
    asset_id: int
    earner_identity: str
    amount_claimed: int
    amount_display: Decimal
    transfer_ref: str
    ledger_entry_id: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "earner_identity": self.earner_identity,
            "amount_claimed": self.amount_claimed,
            "amount_display": decimal_to_str(self.amount_display),
            "transfer_ref": self.transfer_ref,
            "ledger_entry_id": self.ledger_entry_id,
        }


def claim_idempotency_key(asset_id: int, earner_identity: str, accrued: int, claimed: int) -> str:
    """Same balance state yields the same key, so a retried claim cannot pay twice."""
    return stable_hash(("royalty_payout", asset_id, earner_identity, accrued, claimed))


class PayoutClaimHandler:
    """Pay an earner's full owed balance and debit it from the ledger."""

    def __init__(
        self,
        db: RoyaltyDatabase,
        transfer_client: TransferClient,
        *,
        clock: Optional[RoyaltyClock] = None,
        config: Optional[RoyaltyConfig] = None,
    ) -> None:
        self._db = db
        self._transfer_client = transfer_client
        self._clock = clock or RoyaltyClock()
        self._config = config or RoyaltyConfig()

    def claim(self, asset_id: int, earner_identity: str, reason: str, actor: str) -> ClaimResult:
        identity = earner_identity.strip()
        if identity == "":
            raise ValidationError("Earner identity must not be blank")
        if actor.strip() == "":
            raise ValidationError("Actor must not be blank")
        if ":" in identity:
            raise ValidationError(
                f"Social identity {identity} cannot receive transfers",
                details={"earner_identity": identity},
            )

        db = self._db
        db.begin()
        try:
            load_asset(db, asset_id)
            acquire_asset_lock(db, asset_id)
            summary = load_ledger_summary(db, asset_id)
            balance = summary.earner(identity)
            owed = balance.owed
            if owed <= 0:
                raise NothingOwedError(
                    f"Nothing owed to {identity} on asset {asset_id}",
                    details={
                        "earner_identity": identity,
                        "accrued": balance.accrued,
                        "claimed": balance.claimed,
                        "owed": owed,
                    },
                )
            treasury = summary.totals.treasury_liquid_balance
            if self._config.enforce_treasury_balance and owed > treasury:
                raise InsufficientTreasuryError(
                    f"Treasury cannot cover payout of {owed} on asset {asset_id}",
                    details={"owed": owed, "treasury_liquid_balance": treasury},
                )

            idempotency_key = claim_idempotency_key(asset_id, identity, balance.accrued, balance.claimed)
            try:
                transfer_ref = self._transfer_client.transfer(
                    destination=identity,
                    amount=owed,
                    idempotency_key=idempotency_key,
                    timeout_seconds=self._config.transfer_timeout_seconds,
                )
            except ExternalTransferError:
                raise
            except Exception as exc:
                raise ExternalTransferError(
                    f"Transfer to {identity} failed: {exc}",
                    details={"earner_identity": identity, "idempotency_key": idempotency_key},
                ) from exc
            if not transfer_ref:
                raise ExternalTransferError(
                    f"Transfer to {identity} returned no reference",
                    details={"earner_identity": identity, "idempotency_key": idempotency_key},
                )
        except BaseException:
            db.rollback()
            raise

        entry = LedgerEntry(
            asset_id=asset_id,
            entry_type=LedgerEntryType.PAYOUT_TO_EARNER.value,
            beneficiary_kind=BeneficiaryKind.EARNER.value,
            beneficiary_identity=identity,
            amount=-owed,
            occurred_at_utc=self._clock.now_utc(),
            external_ref=transfer_ref,
            reason=reason,
            created_by=actor.strip(),
        )
        try:
            entry_id = append_entries(db, [entry])[0]
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.exception(
                "Ledger write failed after transfer %s to %s on asset %s; manual compensation required.",
                transfer_ref,
                identity,
                asset_id,
            )
            raise PersistenceError(
                f"Transfer {transfer_ref} succeeded but the payout was not recorded",
                details={
                    "transfer_ref": transfer_ref,
                    "asset_id": asset_id,
                    "earner_identity": identity,
                    "amount": owed,
                    "idempotency_key": idempotency_key,
                },
            ) from exc

        logger.info("Recorded payout of %d to %s on asset %s (%s).", owed, identity, asset_id, transfer_ref)
        refresh_ownership_view(db, asset_id, clock=self._clock)
        return ClaimResult(
            asset_id=asset_id,
            earner_identity=identity,
            amount_claimed=owed,
            amount_display=to_display_units(owed, self._config.display_decimals),
            transfer_ref=transfer_ref,
            ledger_entry_id=entry_id,
        )
