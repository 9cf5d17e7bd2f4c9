"""Split update protocol: validate, diff, snapshot, close, open, project."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import enum
import json
import logging
from typing import Any, Optional, Sequence

from royalties.agreements import (
    AgreementVersion,
    ShareSpec,
    close_version,
    get_current_agreement,
    list_versions,
    open_version,
    validate_split,
)
from royalties.common import (
    RoyaltyClock,
    RoyaltyDatabase,
    acquire_asset_lock,
    bps_to_percentage,
    decimal_to_str,
    load_asset,
    normalize_timestamp,
    transaction,
)
from royalties.config import RoyaltyConfig
from royalties.errors import (
    ConflictError,
    NoChangeError,
    PersistenceError,
    RoyaltyError,
    ValidationError,
)
from royalties.fee_snapshots import BoundarySnapshot, FeeDataSource, ensure_boundary_snapshot, snapshot_as_of
from royalties.ownership_view import project_ownership_view

logger = logging.getLogger(__name__)

SIDE_WRITE_OWNERSHIP_VIEW = "ownership_view"
SIDE_WRITE_CHANGE_HISTORY = "change_history"


class SplitUpdateState(str, enum.Enum):
    VALIDATING = "VALIDATING"
    DIFFING = "DIFFING"
    SNAPSHOTTING = "SNAPSHOTTING"
    CLOSING = "CLOSING"
    OPENING = "OPENING"
    PROJECTING = "PROJECTING"
    DONE = "DONE"
    ABORTED = "ABORTED"


@dataclass(frozen=True)
class SplitUpdateRequest:
    asset_id: int
    platform_fee_bps: int
    shares: tuple[ShareSpec, ...]
    actor: str
    reason: str = "manual_update"


@dataclass(frozen=True)
class SplitShareResult:
    earner_identity: str
    share_bps: int
    percentage: Decimal


@dataclass(frozen=True)
class SplitUpdateResult:
    """Outcome of a committed split change."""

    asset_id: int
    agreement_version_id: int
    previous_agreement_version_id: Optional[int]
    platform_fee_bps: int
    platform_percentage: Decimal
    shares: tuple[SplitShareResult, ...]
    effective_from_utc: datetime
    boundary_snapshot_id: int
    boundary_snapshot_created: bool
    fees_at_change: int
    transitions: tuple[SplitUpdateState, ...]
    side_write_failures: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "agreement_version_id": self.agreement_version_id,
            "previous_agreement_version_id": self.previous_agreement_version_id,
            "platform_fee_bps": self.platform_fee_bps,
            "platform_percentage": decimal_to_str(self.platform_percentage),
            "shares": [
                {
                    "earner_identity": share.earner_identity,
                    "share_bps": share.share_bps,
                    "percentage": decimal_to_str(share.percentage),
                }
                for share in self.shares
            ],
            "effective_from_utc": normalize_timestamp(self.effective_from_utc),
            "boundary_snapshot_id": self.boundary_snapshot_id,
            "boundary_snapshot_created": self.boundary_snapshot_created,
            "fees_at_change": self.fees_at_change,
            "transitions": [state.value for state in self.transitions],
            "side_write_failures": list(self.side_write_failures),
        }


@dataclass(frozen=True)
class SideWriteReplay:
    asset_id: int
    agreement_version_id: Optional[int]
    view_rebuilt: bool
    history_inserted: bool


@dataclass(frozen=True)
class _CommittedChange:
    previous: Optional[AgreementVersion]
    current: AgreementVersion
    boundary: BoundarySnapshot


def _shares_json(shares: Sequence[ShareSpec]) -> str:
    return json.dumps(
        [
            {
                "earner_identity": share.earner_identity,
                "share_bps": share.share_bps,
                "percentage": float(bps_to_percentage(share.share_bps)),
            }
            for share in shares
        ],
        sort_keys=True,
    )


def record_change_history(
    db: RoyaltyDatabase,
    current: AgreementVersion,
    previous: Optional[AgreementVersion],
    *,
    fees_at_change: int,
) -> bool:
    """Insert the audit row for ``current`` unless it already exists."""
    row = db.fetch_one(
        """
        INSERT INTO royalty_change_history (
            asset_id,
            agreement_version_id,
            previous_agreement_version_id,
            platform_fee_bps,
            previous_platform_fee_bps,
            new_shares,
            previous_shares,
            changed_by,
            change_reason,
            fees_at_change,
            changed_at_utc
        ) VALUES (
            :asset_id,
            :agreement_version_id,
            :previous_agreement_version_id,
            :platform_fee_bps,
            :previous_platform_fee_bps,
            CAST(:new_shares AS JSONB),
            CAST(:previous_shares AS JSONB),
            :changed_by,
            :change_reason,
            :fees_at_change,
            :changed_at_utc
        )
        ON CONFLICT (agreement_version_id) DO NOTHING
        RETURNING change_id
        """,
        {
            "asset_id": current.asset_id,
            "agreement_version_id": current.agreement_version_id,
            "previous_agreement_version_id": None if previous is None else previous.agreement_version_id,
            "platform_fee_bps": current.platform_fee_bps,
            "previous_platform_fee_bps": None if previous is None else previous.platform_fee_bps,
            "new_shares": _shares_json(current.shares),
            "previous_shares": None if previous is None else _shares_json(previous.shares),
            "changed_by": current.created_by,
            "change_reason": current.change_reason,
            "fees_at_change": fees_at_change,
            "changed_at_utc": current.effective_from_utc,
        },
    )
    return row is not None


def _mark_aborted(exc: RoyaltyError, transitions: list[SplitUpdateState]) -> None:
    transitions.append(SplitUpdateState.ABORTED)
    exc.details["transitions"] = [state.value for state in transitions]


class SplitUpdateProtocol:
    """Replace an asset's current split without touching past accounting."""

    def __init__(
        self,
        db: RoyaltyDatabase,
        *,
        clock: Optional[RoyaltyClock] = None,
        config: Optional[RoyaltyConfig] = None,
        fee_source: Optional[FeeDataSource] = None,
    ) -> None:
        self._db = db
        self._clock = clock or RoyaltyClock()
        self._config = config or RoyaltyConfig()
        self._fee_source = fee_source

    def update_split(self, request: SplitUpdateRequest) -> SplitUpdateResult:
        transitions: list[SplitUpdateState] = [SplitUpdateState.VALIDATING]
        try:
            validate_split(request.platform_fee_bps, request.shares)
            if request.actor.strip() == "":
                raise ValidationError("Actor must not be blank")
        except ValidationError as exc:
            _mark_aborted(exc, transitions)
            raise

        retries_left = self._config.split_update_conflict_retries
        while True:
            try:
                with transaction(self._db):
                    committed = self._apply(request, transitions)
                break
            except ConflictError as exc:
                if retries_left <= 0:
                    _mark_aborted(exc, transitions)
                    logger.warning("Split update for asset %s aborted on conflict: %s", request.asset_id, exc)
                    raise
                retries_left -= 1
                logger.warning("Split update for asset %s hit a conflict; retrying from diff.", request.asset_id)
            except RoyaltyError as exc:
                _mark_aborted(exc, transitions)
                raise

        transitions.append(SplitUpdateState.PROJECTING)
        failures = self._project(committed)
        transitions.append(SplitUpdateState.DONE)

        current = committed.current
        logger.info(
            "Split updated for asset %s: version %s replaces %s.",
            request.asset_id,
            current.agreement_version_id,
            None if committed.previous is None else committed.previous.agreement_version_id,
        )
        return SplitUpdateResult(
            asset_id=request.asset_id,
            agreement_version_id=current.agreement_version_id,
            previous_agreement_version_id=(
                None if committed.previous is None else committed.previous.agreement_version_id
            ),
            platform_fee_bps=current.platform_fee_bps,
            platform_percentage=bps_to_percentage(current.platform_fee_bps),
            shares=tuple(
                SplitShareResult(
                    earner_identity=share.earner_identity,
                    share_bps=share.share_bps,
                    percentage=share.percentage,
                )
                for share in current.shares
            ),
            effective_from_utc=current.effective_from_utc,
            boundary_snapshot_id=committed.boundary.snapshot_id,
            boundary_snapshot_created=committed.boundary.created,
            fees_at_change=committed.boundary.lifetime_fees_after,
            transitions=tuple(transitions),
            side_write_failures=tuple(failures),
        )

    def _apply(self, request: SplitUpdateRequest, transitions: list[SplitUpdateState]) -> _CommittedChange:
        db = self._db
        load_asset(db, request.asset_id)
        acquire_asset_lock(db, request.asset_id)

        transitions.append(SplitUpdateState.DIFFING)
        shares = tuple(ShareSpec(share.earner_identity.strip(), share.share_bps) for share in request.shares)
        current = get_current_agreement(db, request.asset_id)
        if (
            current is not None
            and current.platform_fee_bps == request.platform_fee_bps
            and current.share_map() == {share.earner_identity: share.share_bps for share in shares}
        ):
            raise NoChangeError(
                "Proposed split is identical to the current agreement",
                details={"agreement_version_id": current.agreement_version_id},
            )

        transitions.append(SplitUpdateState.SNAPSHOTTING)
        boundary = ensure_boundary_snapshot(
            db,
            request.asset_id,
            clock=self._clock,
            fee_source=self._fee_source,
        )
        now = self._clock.now_utc()

        transitions.append(SplitUpdateState.CLOSING)
        try:
            if current is not None:
                close_version(db, current.agreement_version_id, now)
            transitions.append(SplitUpdateState.OPENING)
            version_id = open_version(
                db,
                request.asset_id,
                request.platform_fee_bps,
                shares,
                request.actor,
                effective_from=now,
                reason=request.reason,
            )
        except (ConflictError, PersistenceError):
            raise
        except Exception as exc:
            raise PersistenceError(
                f"Split update write failed for asset {request.asset_id}: {exc}",
                details={"asset_id": request.asset_id},
            ) from exc

        new_version = AgreementVersion(
            agreement_version_id=version_id,
            asset_id=request.asset_id,
            platform_fee_bps=request.platform_fee_bps,
            effective_from_utc=now,
            effective_to_utc=None,
            created_by=request.actor.strip(),
            change_reason=request.reason,
            shares=shares,
        )
        return _CommittedChange(previous=current, current=new_version, boundary=boundary)

    def _project(self, committed: _CommittedChange) -> list[str]:
        failures: list[str] = []
        asset_id = committed.current.asset_id
        try:
            with transaction(self._db):
                project_ownership_view(self._db, asset_id, committed.current, clock=self._clock)
        except Exception:
            logger.exception("Ownership view projection failed for asset %s.", asset_id)
            failures.append(SIDE_WRITE_OWNERSHIP_VIEW)
        try:
            with transaction(self._db):
                record_change_history(
                    self._db,
                    committed.current,
                    committed.previous,
                    fees_at_change=committed.boundary.lifetime_fees_after,
                )
        except Exception:
            logger.exception("Change history write failed for asset %s.", asset_id)
            failures.append(SIDE_WRITE_CHANGE_HISTORY)
        return failures


def replay_side_writes(
    db: RoyaltyDatabase,
    asset_id: int,
    *,
    clock: Optional[RoyaltyClock] = None,
) -> SideWriteReplay:
    """Re-run view projection and history insert for the current agreement."""
    clock = clock or RoyaltyClock()
    with transaction(db):
        load_asset(db, asset_id)
        acquire_asset_lock(db, asset_id)
        versions = list_versions(db, asset_id)
        current = next((version for version in versions if version.is_current), None)
        if current is None:
            return SideWriteReplay(
                asset_id=asset_id,
                agreement_version_id=None,
                view_rebuilt=False,
                history_inserted=False,
            )
        previous = next(
            (version for version in versions if version.effective_to_utc == current.effective_from_utc),
            None,
        )
        boundary = snapshot_as_of(db, asset_id, current.effective_from_utc)
        fees_at_change = 0 if boundary is None else boundary.lifetime_fees_after
        project_ownership_view(db, asset_id, current, clock=clock)
        inserted = record_change_history(db, current, previous, fees_at_change=fees_at_change)
    logger.info(
        "Replayed side writes for asset %s (agreement %s, history_inserted=%s).",
        asset_id,
        current.agreement_version_id,
        inserted,
    )
    return SideWriteReplay(
        asset_id=asset_id,
        agreement_version_id=current.agreement_version_id,
        view_rebuilt=True,
        history_inserted=inserted,
    )
