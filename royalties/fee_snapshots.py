"""Lifetime fee snapshots, boundary markers, and the periodic accrual job."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import json
import logging
import time
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from backend.db.enums import JobRunStatus, LedgerEntryType
from royalties.agreements import get_current_agreement
from royalties.common import (
    AssetRef,
    RoyaltyClock,
    RoyaltyDatabase,
    acquire_asset_lock,
    list_asset_ids,
    load_asset,
    transaction,
)
from royalties.errors import FeeSourceError, ValidationError
from royalties.ledger_store import LedgerEntry, append_entries, load_ledger_totals, split_fee_delta

logger = logging.getLogger(__name__)

BOUNDARY_JOB_NAME = "boundary-snapshot"
PERIODIC_JOB_NAME = "update-fee-snapshots"
SYNTHESIZED_SOURCE_REF = "boundary:ledger-accrual-sum"
RETRYABLE_HTTP_STATUSES = frozenset({408, 425, 429})


class FeeDataSource(Protocol):
    """External source of an asset's cumulative lifetime fees."""

    def fetch_lifetime_fees(self, asset: AssetRef) -> int:
        """Return lifetime fees in smallest units."""


class HttpFeeSource:
    """HTTP fee source with bounded, backed-off retries and a per-request timeout."""

    source_ref = "fee-source:http"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 20.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        requester: Optional[Callable[[str, dict[str, str]], Any]] = None,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = max(0.0, backoff_seconds)
        self._requester = requester
        self._sleeper = sleeper

    def _request_json(self, path: str) -> Any:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        url = f"{self._base_url}{path}"
        if self._requester is not None:
            return self._requester(url, headers)

        request = Request(url=url, headers=headers, method="GET")
        last_error: Exception | None = None
        for attempt in range(self._max_attempts):
            if attempt > 0:
                self._sleeper(self._backoff_seconds * (2 ** (attempt - 1)))
            try:
                with urlopen(request, timeout=self._timeout_seconds) as response:
                    return json.loads(response.read().decode("utf-8"))
            except HTTPError as exc:
                if 400 <= exc.code < 500 and exc.code not in RETRYABLE_HTTP_STATUSES:
                    raise FeeSourceError(
                        f"Fee source rejected request: {exc}",
                        details={"url": url, "status": exc.code},
                    ) from exc
                last_error = exc
            except (URLError, TimeoutError) as exc:
                last_error = exc

        if last_error is None:
            raise FeeSourceError("Fee source request failed without an exception", details={"url": url})
        raise FeeSourceError(
            f"Fee source request failed after retries: {last_error}",
            details={"url": url, "attempts": self._max_attempts},
        ) from last_error

    def fetch_lifetime_fees(self, asset: AssetRef) -> int:
        key = asset.contract_address or str(asset.asset_id)
        payload = self._request_json(f"/assets/{quote(key, safe='')}/lifetime-fees")
        details = {"asset_id": asset.asset_id}
        if not isinstance(payload, Mapping) or "lifetime_fees" not in payload:
            raise FeeSourceError(
                f"Fee source payload missing lifetime_fees for asset {asset.asset_id}",
                details=details,
            )
        try:
            value = int(payload["lifetime_fees"])
        except (TypeError, ValueError) as exc:
            raise FeeSourceError(
                f"Fee source returned a non-integer lifetime total for asset {asset.asset_id}",
                details=details,
            ) from exc
        if value < 0:
            raise FeeSourceError(
                f"Fee source returned a negative lifetime total for asset {asset.asset_id}",
                details=details,
            )
        return value


def fetch_lifetime_total(fee_source: FeeDataSource, asset: AssetRef) -> int:
    """Ask ``fee_source`` for the asset's total; any failure becomes ``FeeSourceError``."""
    try:
        return fee_source.fetch_lifetime_fees(asset)
    except FeeSourceError:
        raise
    except Exception as exc:
        raise FeeSourceError(
            f"Fee source failed for asset {asset.asset_id}: {exc}",
            details={"asset_id": asset.asset_id, "source_ref": getattr(fee_source, "source_ref", None)},
        ) from exc


@dataclass(frozen=True)
class FeeSnapshotRecord:
    snapshot_id: int
    asset_id: int
    job_run_id: int
    lifetime_fees_after: int
    source_ref: str
    fetched_at_utc: datetime


@dataclass(frozen=True)
class BoundarySnapshot:
    """Fee marker used as the cut line of a split change."""

    snapshot_id: int
    created: bool
    lifetime_fees_after: int


@dataclass(frozen=True)
class CaptureResult:
    snapshot_id: int
    created: bool
    lifetime_fees_after: int
    delta: int
    accrual_entry_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class FeeSnapshotJobResult:
    job_run_id: int
    status: str
    assets_processed: int
    snapshots_written: int
    accrual_entries_written: int
    failed_asset_ids: tuple[int, ...]

    def to_payload(self) -> dict[str, Any]:
        return {
            "job_run_id": self.job_run_id,
            "status": self.status,
            "assets_processed": self.assets_processed,
            "snapshots_written": self.snapshots_written,
            "accrual_entries_written": self.accrual_entries_written,
            "failed_asset_ids": list(self.failed_asset_ids),
        }


def _snapshot_from_row(row: Mapping[str, Any]) -> FeeSnapshotRecord:
    return FeeSnapshotRecord(
        snapshot_id=int(row["snapshot_id"]),
        asset_id=int(row["asset_id"]),
        job_run_id=int(row["job_run_id"]),
        lifetime_fees_after=int(row["lifetime_fees_after"]),
        source_ref=str(row["source_ref"]),
        fetched_at_utc=row["fetched_at_utc"],
    )


def latest_snapshot(db: RoyaltyDatabase, asset_id: int) -> Optional[FeeSnapshotRecord]:
    row = db.fetch_one(
        """
        SELECT snapshot_id, asset_id, job_run_id, lifetime_fees_after, source_ref, fetched_at_utc
        FROM fee_snapshot
        WHERE asset_id = :asset_id
        ORDER BY fetched_at_utc DESC, snapshot_id DESC
        LIMIT 1
        """,
        {"asset_id": asset_id},
    )
    return None if row is None else _snapshot_from_row(row)


def snapshot_as_of(db: RoyaltyDatabase, asset_id: int, ts: datetime) -> Optional[FeeSnapshotRecord]:
    """Most recent snapshot fetched at or before ``ts``."""
    row = db.fetch_one(
        """
        SELECT snapshot_id, asset_id, job_run_id, lifetime_fees_after, source_ref, fetched_at_utc
        FROM fee_snapshot
        WHERE asset_id = :asset_id
          AND fetched_at_utc <= :as_of_utc
        ORDER BY fetched_at_utc DESC, snapshot_id DESC
        LIMIT 1
        """,
        {"asset_id": asset_id, "as_of_utc": ts},
    )
    return None if row is None else _snapshot_from_row(row)


def start_job_run(db: RoyaltyDatabase, job_name: str, *, clock: RoyaltyClock) -> int:
    row = db.fetch_one(
        """
        INSERT INTO job_run (job_name, status, started_at_utc)
        VALUES (:job_name, CAST(:status AS job_run_status_enum), :started_at_utc)
        RETURNING job_run_id
        """,
        {
            "job_name": job_name,
            "status": JobRunStatus.RUNNING.value,
            "started_at_utc": clock.now_utc(),
        },
    )
    if row is None:
        raise RuntimeError(f"job_run insert returned no id for {job_name}")
    return int(row["job_run_id"])


def finish_job_run(
    db: RoyaltyDatabase,
    job_run_id: int,
    status: JobRunStatus,
    *,
    clock: RoyaltyClock,
    assets_processed: int,
    snapshots_written: int,
    error_detail: Optional[str] = None,
) -> None:
    db.execute(
        """
        UPDATE job_run
        SET status = CAST(:status AS job_run_status_enum),
            finished_at_utc = :finished_at_utc,
            assets_processed = :assets_processed,
            snapshots_written = :snapshots_written,
            error_detail = :error_detail
        WHERE job_run_id = :job_run_id
        """,
        {
            "job_run_id": job_run_id,
            "status": status.value,
            "finished_at_utc": clock.now_utc(),
            "assets_processed": assets_processed,
            "snapshots_written": snapshots_written,
            "error_detail": error_detail,
        },
    )


def insert_snapshot(
    db: RoyaltyDatabase,
    asset_id: int,
    *,
    job_run_id: int,
    lifetime_fees_after: int,
    source_ref: str,
    fetched_at_utc: datetime,
) -> int:
    row = db.fetch_one(
        """
        INSERT INTO fee_snapshot (asset_id, job_run_id, lifetime_fees_after, source_ref, fetched_at_utc)
        VALUES (:asset_id, :job_run_id, :lifetime_fees_after, :source_ref, :fetched_at_utc)
        RETURNING snapshot_id
        """,
        {
            "asset_id": asset_id,
            "job_run_id": job_run_id,
            "lifetime_fees_after": lifetime_fees_after,
            "source_ref": source_ref,
            "fetched_at_utc": fetched_at_utc,
        },
    )
    if row is None:
        raise RuntimeError(f"fee_snapshot insert returned no id for asset {asset_id}")
    return int(row["snapshot_id"])


def capture_fee_snapshot(
    db: RoyaltyDatabase,
    asset_id: int,
    lifetime_total: int,
    *,
    job_run_id: int,
    clock: RoyaltyClock,
    source_ref: str = HttpFeeSource.source_ref,
    actor: str = PERIODIC_JOB_NAME,
) -> CaptureResult:
    """Record a new lifetime total and accrue the increase under the current agreement.

    Totals are monotonic: a value below the last snapshot is rejected. An unchanged
    value reuses the last snapshot and writes nothing. Caller owns the transaction
    and the asset lock.
    """
    previous = latest_snapshot(db, asset_id)
    previous_value = 0 if previous is None else previous.lifetime_fees_after
    if lifetime_total < previous_value:
        raise ValidationError(
            f"Lifetime fees decreased for asset {asset_id}: {lifetime_total} < {previous_value}",
            details={"asset_id": asset_id, "previous": previous_value, "current": lifetime_total},
        )
    if previous is not None and lifetime_total == previous_value:
        return CaptureResult(
            snapshot_id=previous.snapshot_id,
            created=False,
            lifetime_fees_after=previous_value,
            delta=0,
        )

    fetched_at = clock.now_utc()
    snapshot_id = insert_snapshot(
        db,
        asset_id,
        job_run_id=job_run_id,
        lifetime_fees_after=lifetime_total,
        source_ref=source_ref,
        fetched_at_utc=fetched_at,
    )
    delta = lifetime_total - previous_value

    agreement = get_current_agreement(db, asset_id)
    shares: list[tuple[str, int]] = []
    agreement_version_id: Optional[int] = None
    if agreement is not None:
        shares = [(share.earner_identity, share.share_bps) for share in agreement.shares]
        agreement_version_id = agreement.agreement_version_id

    entries = [
        LedgerEntry(
            asset_id=asset_id,
            entry_type=LedgerEntryType.ACCRUAL.value,
            beneficiary_kind=kind,
            beneficiary_identity=identity,
            amount=amount,
            occurred_at_utc=fetched_at,
            job_run_id=job_run_id,
            snapshot_id=snapshot_id,
            agreement_version_id=agreement_version_id,
            reason="fee accrual",
            created_by=actor,
        )
        for kind, identity, amount in split_fee_delta(delta, shares)
    ]
    entry_ids = append_entries(db, entries)
    logger.info(
        "Captured fee snapshot %s for asset %s (delta=%d, accruals=%d).",
        snapshot_id,
        asset_id,
        delta,
        len(entry_ids),
    )
    return CaptureResult(
        snapshot_id=snapshot_id,
        created=True,
        lifetime_fees_after=lifetime_total,
        delta=delta,
        accrual_entry_ids=tuple(entry_ids),
    )


def ensure_boundary_snapshot(
    db: RoyaltyDatabase,
    asset_id: int,
    *,
    clock: RoyaltyClock,
    fee_source: Optional[FeeDataSource] = None,
) -> BoundarySnapshot:
    """Guarantee a fee marker exists as of now; never overwrites an existing snapshot."""
    if fee_source is not None:
        asset = load_asset(db, asset_id)
        job_run_id = start_job_run(db, BOUNDARY_JOB_NAME, clock=clock)
        captured = capture_fee_snapshot(
            db,
            asset_id,
            fetch_lifetime_total(fee_source, asset),
            job_run_id=job_run_id,
            clock=clock,
            actor=BOUNDARY_JOB_NAME,
        )
        finish_job_run(
            db,
            job_run_id,
            JobRunStatus.SUCCESS,
            clock=clock,
            assets_processed=1,
            snapshots_written=1 if captured.created else 0,
        )
        return BoundarySnapshot(
            snapshot_id=captured.snapshot_id,
            created=captured.created,
            lifetime_fees_after=captured.lifetime_fees_after,
        )

    existing = latest_snapshot(db, asset_id)
    if existing is not None:
        return BoundarySnapshot(
            snapshot_id=existing.snapshot_id,
            created=False,
            lifetime_fees_after=existing.lifetime_fees_after,
        )

    # No snapshot yet: the ledger accrual sum is the only known total (zero at launch).
    value = load_ledger_totals(db, asset_id).accrual_sum
    job_run_id = start_job_run(db, BOUNDARY_JOB_NAME, clock=clock)
    snapshot_id = insert_snapshot(
        db,
        asset_id,
        job_run_id=job_run_id,
        lifetime_fees_after=value,
        source_ref=SYNTHESIZED_SOURCE_REF,
        fetched_at_utc=clock.now_utc(),
    )
    finish_job_run(
        db,
        job_run_id,
        JobRunStatus.SUCCESS,
        clock=clock,
        assets_processed=1,
        snapshots_written=1,
    )
    logger.info("Synthesized boundary snapshot %s for asset %s at %d.", snapshot_id, asset_id, value)
    return BoundarySnapshot(snapshot_id=snapshot_id, created=True, lifetime_fees_after=value)


def run_fee_snapshot_job(
    db: RoyaltyDatabase,
    fee_source: FeeDataSource,
    *,
    clock: Optional[RoyaltyClock] = None,
    asset_ids: Optional[Sequence[int]] = None,
    on_asset_committed: Optional[Callable[[int], Any]] = None,
) -> FeeSnapshotJobResult:
    """Ingest lifetime totals for each asset; one failing asset does not stop the rest.

    ``on_asset_committed`` runs after each asset whose accruals were committed,
    outside that asset's transaction.
    """
    clock = clock or RoyaltyClock()
    with transaction(db):
        job_run_id = start_job_run(db, PERIODIC_JOB_NAME, clock=clock)
        targets = list(asset_ids) if asset_ids is not None else list_asset_ids(db)

    processed = 0
    written = 0
    accruals = 0
    failed: list[int] = []
    for asset_id in targets:
        try:
            with transaction(db):
                acquire_asset_lock(db, asset_id)
                asset = load_asset(db, asset_id)
                captured = capture_fee_snapshot(
                    db,
                    asset_id,
                    fetch_lifetime_total(fee_source, asset),
                    job_run_id=job_run_id,
                    clock=clock,
                    source_ref=getattr(fee_source, "source_ref", HttpFeeSource.source_ref),
                )
        except Exception:
            logger.exception("Fee snapshot failed for asset %s.", asset_id)
            failed.append(asset_id)
            continue
        processed += 1
        if captured.created:
            written += 1
        accruals += len(captured.accrual_entry_ids)
        if on_asset_committed is not None and captured.accrual_entry_ids:
            on_asset_committed(asset_id)

    status = JobRunStatus.ERROR if failed else JobRunStatus.SUCCESS
    error_detail = None
    if failed:
        error_detail = "failed asset_ids: " + ",".join(str(asset_id) for asset_id in failed)
    with transaction(db):
        finish_job_run(
            db,
            job_run_id,
            status,
            clock=clock,
            assets_processed=processed,
            snapshots_written=written,
            error_detail=error_detail,
        )
    if failed:
        logger.warning("Fee snapshot job %s finished with %d failed assets.", job_run_id, len(failed))
    else:
        logger.info("Fee snapshot job %s processed %d assets.", job_run_id, processed)
    return FeeSnapshotJobResult(
        job_run_id=job_run_id,
        status=status.value,
        assets_processed=processed,
        snapshots_written=written,
        accrual_entries_written=accruals,
        failed_asset_ids=tuple(failed),
    )
