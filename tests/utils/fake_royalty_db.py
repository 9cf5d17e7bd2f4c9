"""Stateful in-memory royalty DB fake that interprets module SQL by marker."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import json
from typing import Any, Callable, Mapping, Optional, Sequence

from royalties.errors import ConflictError, PersistenceError


def _normalize(sql: str) -> str:
    return " ".join(sql.lower().split())


class StepClock:
    """Deterministic clock that advances one second per read."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=1)) -> None:
        self._current = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._step = step

    def now_utc(self) -> datetime:
        value = self._current
        self._current = self._current + self._step
        return value


@dataclass
class _State:
    assets: dict[int, dict[str, Any]] = field(default_factory=dict)
    job_runs: dict[int, dict[str, Any]] = field(default_factory=dict)
    snapshots: dict[int, dict[str, Any]] = field(default_factory=dict)
    versions: dict[int, dict[str, Any]] = field(default_factory=dict)
    shares: list[dict[str, Any]] = field(default_factory=list)
    history: dict[int, dict[str, Any]] = field(default_factory=dict)
    ledger: dict[int, dict[str, Any]] = field(default_factory=dict)
    views: dict[int, dict[str, Any]] = field(default_factory=dict)
    counters: dict[str, int] = field(default_factory=dict)

    def next_id(self, name: str) -> int:
        value = self.counters.get(name, 0) + 1
        self.counters[name] = value
        return value


@dataclass
class _Failure:
    marker: str
    exc: BaseException
    remaining: Optional[int]


class FakeRoyaltyDB:
    """Royalty DB fake with real transaction rollback semantics."""

    def __init__(self) -> None:
        self.state = _State()
        self.statements: list[str] = []
        self.locks: list[int] = []
        self.begins = 0
        self.commits = 0
        self.rollbacks = 0
        self.read_only_snapshots = 0
        self._tx_backup: Optional[_State] = None
        self._failures: list[_Failure] = []
        self._hooks: list[tuple[str, Callable[["FakeRoyaltyDB"], None], list[int]]] = []

    # -- test helpers -------------------------------------------------

    def fail_on(self, marker: str, exc: BaseException, *, times: Optional[int] = 1) -> None:
        """Raise ``exc`` when a statement containing ``marker`` runs (``times=None`` for always)."""
        self._failures.append(_Failure(marker=marker.lower(), exc=exc, remaining=times))

    def on_statement(self, marker: str, hook: Callable[["FakeRoyaltyDB"], None], *, times: int = 1) -> None:
        """Run ``hook`` before the next ``times`` statements containing ``marker``."""
        self._hooks.append((marker.lower(), hook, [times]))

    def add_asset(self, name: str = "Token", symbol: str = "TKN", contract_address: str | None = None) -> int:
        asset_id = self.state.next_id("asset")
        self.state.assets[asset_id] = {
            "asset_id": asset_id,
            "name": name,
            "symbol": symbol,
            "contract_address": contract_address,
        }
        return asset_id

    def add_snapshot(self, asset_id: int, lifetime_fees_after: int, fetched_at_utc: datetime) -> int:
        job_run_id = self.state.next_id("job_run")
        self.state.job_runs[job_run_id] = {
            "job_run_id": job_run_id,
            "job_name": "seed",
            "status": "SUCCESS",
            "started_at_utc": fetched_at_utc,
            "finished_at_utc": fetched_at_utc,
            "assets_processed": 1,
            "snapshots_written": 1,
            "error_detail": None,
        }
        return self._insert_snapshot(
            {
                "asset_id": asset_id,
                "job_run_id": job_run_id,
                "lifetime_fees_after": lifetime_fees_after,
                "source_ref": "seed",
                "fetched_at_utc": fetched_at_utc,
            }
        )

    def add_ledger_entry(
        self,
        asset_id: int,
        entry_type: str,
        beneficiary_kind: str,
        beneficiary_identity: str,
        amount: int,
        *,
        external_ref: str | None = None,
    ) -> int:
        entry_id = self.state.next_id("ledger")
        self.state.ledger[entry_id] = {
            "entry_id": entry_id,
            "asset_id": asset_id,
            "entry_type": entry_type,
            "beneficiary_kind": beneficiary_kind,
            "beneficiary_identity": beneficiary_identity,
            "amount": amount,
            "occurred_at_utc": datetime(2026, 1, 1, tzinfo=timezone.utc),
            "external_ref": external_ref,
            "row_hash": f"seed-{entry_id}",
        }
        return entry_id

    def versions_for(self, asset_id: int) -> list[dict[str, Any]]:
        return sorted(
            (row for row in self.state.versions.values() if row["asset_id"] == asset_id),
            key=lambda row: row["agreement_version_id"],
        )

    def current_versions(self, asset_id: int) -> list[dict[str, Any]]:
        return [row for row in self.versions_for(asset_id) if row["effective_to_utc"] is None]

    def shares_for(self, agreement_version_id: int) -> list[dict[str, Any]]:
        return sorted(
            (row for row in self.state.shares if row["agreement_version_id"] == agreement_version_id),
            key=lambda row: row["share_ordinal"],
        )

    def ledger_for(self, asset_id: int) -> list[dict[str, Any]]:
        return [row for row in self.state.ledger.values() if row["asset_id"] == asset_id]

    def history_for(self, asset_id: int) -> list[dict[str, Any]]:
        return [row for row in self.state.history.values() if row["asset_id"] == asset_id]

    def snapshots_for(self, asset_id: int) -> list[dict[str, Any]]:
        return [row for row in self.state.snapshots.values() if row["asset_id"] == asset_id]

    def view_for(self, asset_id: int) -> Optional[dict[str, Any]]:
        return self.state.views.get(asset_id)

    def insert_version_directly(
        self,
        asset_id: int,
        platform_fee_bps: int,
        shares: Sequence[tuple[str, int]],
        *,
        effective_from_utc: datetime,
        created_by: str = "seed",
    ) -> int:
        """Simulate another writer: close the open version and open a new one."""
        for row in self.current_versions(asset_id):
            row["effective_to_utc"] = effective_from_utc
        version_id = self.state.next_id("version")
        self.state.versions[version_id] = {
            "agreement_version_id": version_id,
            "asset_id": asset_id,
            "platform_fee_bps": platform_fee_bps,
            "effective_from_utc": effective_from_utc,
            "effective_to_utc": None,
            "created_by": created_by,
            "change_reason": "seed",
        }
        for ordinal, (identity, bps) in enumerate(shares):
            self.state.shares.append(
                {
                    "agreement_version_id": version_id,
                    "earner_identity": identity,
                    "share_bps": bps,
                    "share_ordinal": ordinal,
                }
            )
        return version_id

    def commit_concurrently(self, write: Callable[["FakeRoyaltyDB"], None]) -> None:
        """Apply ``write`` as another session's committed change; it survives our rollback."""
        write(self)
        if self._tx_backup is None:
            return
        live = self.state
        self.state = self._tx_backup
        try:
            write(self)
            self._tx_backup = self.state
        finally:
            self.state = live

    # -- transaction protocol -----------------------------------------

    @property
    def in_transaction(self) -> bool:
        return self._tx_backup is not None

    def begin(self) -> None:
        self.begins += 1
        self._tx_backup = copy.deepcopy(self.state)

    def commit(self) -> None:
        self.commits += 1
        self._tx_backup = None

    def rollback(self) -> None:
        self.rollbacks += 1
        if self._tx_backup is not None:
            self.state = self._tx_backup
        self._tx_backup = None

    # -- statement dispatch -------------------------------------------

    def _before(self, sql: str) -> str:
        normalized = _normalize(sql)
        self.statements.append(normalized)
        for marker, hook, remaining in self._hooks:
            if remaining[0] > 0 and marker in normalized:
                remaining[0] -= 1
                hook(self)
        for failure in list(self._failures):
            if failure.marker in normalized:
                if failure.remaining is not None:
                    failure.remaining -= 1
                    if failure.remaining <= 0:
                        self._failures.remove(failure)
                raise failure.exc
        return normalized

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        rows = self._dispatch(self._before(sql), params)
        return rows[0] if rows else None

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        return self._dispatch(self._before(sql), params)

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        self._dispatch(self._before(sql), params)

    def _dispatch(self, sql: str, params: Mapping[str, Any]) -> list[dict[str, Any]]:
        state = self.state
        if "pg_advisory_xact_lock" in sql:
            self.locks.append(int(params["lock_key"]))
            return []
        if sql.startswith("set transaction isolation level repeatable read read only"):
            self.read_only_snapshots += 1
            return []

        if sql.startswith("select asset_id, name, symbol, contract_address from asset"):
            row = state.assets.get(int(params["asset_id"]))
            return [] if row is None else [dict(row)]
        if sql.startswith("select asset_id from asset"):
            return [{"asset_id": asset_id} for asset_id in sorted(state.assets)]

        if sql.startswith("insert into job_run"):
            job_run_id = state.next_id("job_run")
            state.job_runs[job_run_id] = {
                "job_run_id": job_run_id,
                "job_name": params["job_name"],
                "status": params["status"],
                "started_at_utc": params["started_at_utc"],
                "finished_at_utc": None,
                "assets_processed": 0,
                "snapshots_written": 0,
                "error_detail": None,
            }
            return [{"job_run_id": job_run_id}]
        if sql.startswith("update job_run"):
            row = state.job_runs[int(params["job_run_id"])]
            row.update(
                {
                    "status": params["status"],
                    "finished_at_utc": params["finished_at_utc"],
                    "assets_processed": params["assets_processed"],
                    "snapshots_written": params["snapshots_written"],
                    "error_detail": params["error_detail"],
                }
            )
            return []

        if sql.startswith("insert into fee_snapshot"):
            return [{"snapshot_id": self._insert_snapshot(dict(params))}]
        if "from fee_snapshot" in sql:
            rows = [row for row in state.snapshots.values() if row["asset_id"] == params["asset_id"]]
            if "as_of_utc" in params:
                rows = [row for row in rows if row["fetched_at_utc"] <= params["as_of_utc"]]
            rows.sort(key=lambda row: (row["fetched_at_utc"], row["snapshot_id"]), reverse=True)
            return [dict(row) for row in rows[:1]]

        if sql.startswith("insert into royalty_agreement_version"):
            return [{"agreement_version_id": self._insert_version(params)}]
        if sql.startswith("insert into royalty_agreement_share"):
            self._insert_shares(params)
            return []
        if sql.startswith("update royalty_agreement_version"):
            row = state.versions.get(int(params["agreement_version_id"]))
            if row is None or row["effective_to_utc"] is not None:
                return []
            row["effective_to_utc"] = params["effective_to_utc"]
            return [{"agreement_version_id": row["agreement_version_id"]}]
        if "from royalty_agreement_share" in sql:
            return [dict(row) for row in self.shares_for(int(params["agreement_version_id"]))]
        if "from royalty_agreement_version" in sql:
            return self._select_versions(sql, params)

        if sql.startswith("insert into fee_ledger_entry"):
            return self._insert_ledger(params)
        if "from fee_ledger_entry" in sql and "group by" in sql:
            return self._grouped_ledger(int(params["asset_id"]))

        if sql.startswith("insert into ownership_view"):
            state.views[int(params["asset_id"])] = {
                "asset_id": params["asset_id"],
                "agreement_version_id": params["agreement_version_id"],
                "platform_fee_bps": params["platform_fee_bps"],
                "royalty_earners": json.loads(params["royalty_earners"]),
                "lifetime_fees": params["lifetime_fees"],
                "platform_accrued": params["platform_accrued"],
                "earners_accrued": params["earners_accrued"],
                "earners_claimed": params["earners_claimed"],
                "treasury_balance": params["treasury_balance"],
                "rebuilt_at_utc": params["rebuilt_at_utc"],
            }
            return []
        if "from ownership_view" in sql:
            row = state.views.get(int(params["asset_id"]))
            return [] if row is None else [copy.deepcopy(row)]

        if sql.startswith("insert into royalty_change_history"):
            version_id = int(params["agreement_version_id"])
            if any(row["agreement_version_id"] == version_id for row in state.history.values()):
                return []
            change_id = state.next_id("history")
            row = dict(params)
            row["change_id"] = change_id
            row["new_shares"] = json.loads(params["new_shares"])
            row["previous_shares"] = (
                None if params["previous_shares"] is None else json.loads(params["previous_shares"])
            )
            state.history[change_id] = row
            return [{"change_id": change_id}]

        raise AssertionError(f"Unhandled SQL in FakeRoyaltyDB: {sql}")

    # -- table emulation ----------------------------------------------

    def _insert_snapshot(self, values: dict[str, Any]) -> int:
        if values["lifetime_fees_after"] < 0:
            raise PersistenceError("ck_fee_snapshot_lifetime_nonneg")
        snapshot_id = self.state.next_id("snapshot")
        values["snapshot_id"] = snapshot_id
        self.state.snapshots[snapshot_id] = values
        return snapshot_id

    def _insert_version(self, params: Mapping[str, Any]) -> int:
        asset_id = int(params["asset_id"])
        if self.current_versions(asset_id):
            raise ConflictError("uqix_royalty_agreement_version_one_current_per_asset")
        if any(row["effective_from_utc"] == params["effective_from_utc"] for row in self.versions_for(asset_id)):
            raise ConflictError("uq_royalty_agreement_version_asset_effective_from")
        version_id = self.state.next_id("version")
        self.state.versions[version_id] = {
            "agreement_version_id": version_id,
            "asset_id": asset_id,
            "platform_fee_bps": params["platform_fee_bps"],
            "effective_from_utc": params["effective_from_utc"],
            "effective_to_utc": None,
            "created_by": params["created_by"],
            "change_reason": params["change_reason"],
        }
        return version_id

    def _insert_shares(self, params: Mapping[str, Any]) -> None:
        version_id = int(params["agreement_version_id"])
        index = 0
        while f"earner_identity_{index}" in params:
            self.state.shares.append(
                {
                    "agreement_version_id": version_id,
                    "earner_identity": params[f"earner_identity_{index}"],
                    "share_bps": params[f"share_bps_{index}"],
                    "share_ordinal": params[f"share_ordinal_{index}"],
                }
            )
            index += 1

    def _select_versions(self, sql: str, params: Mapping[str, Any]) -> list[dict[str, Any]]:
        if "agreement_version_id" in params:
            row = self.state.versions.get(int(params["agreement_version_id"]))
            return [] if row is None else [dict(row)]
        rows = self.versions_for(int(params["asset_id"]))
        if "effective_to_utc is null" in sql:
            rows = [row for row in rows if row["effective_to_utc"] is None]
        rows.sort(key=lambda row: (row["effective_from_utc"], row["agreement_version_id"]))
        return [dict(row) for row in rows]

    def _insert_ledger(self, params: Mapping[str, Any]) -> list[dict[str, Any]]:
        existing_hashes = {row["row_hash"] for row in self.state.ledger.values()}
        inserted: list[dict[str, Any]] = []
        index = 0
        while f"asset_id_{index}" in params:
            row = {
                key: params[f"{key}_{index}"]
                for key in (
                    "asset_id",
                    "entry_type",
                    "beneficiary_kind",
                    "beneficiary_identity",
                    "amount",
                    "occurred_at_utc",
                    "job_run_id",
                    "snapshot_id",
                    "agreement_version_id",
                    "external_ref",
                    "reason",
                    "created_by",
                    "row_hash",
                )
            }
            if row["row_hash"] in existing_hashes:
                raise ConflictError("uq_fee_ledger_entry_row_hash")
            existing_hashes.add(row["row_hash"])
            row["entry_id"] = self.state.next_id("ledger")
            self.state.ledger[row["entry_id"]] = row
            inserted.append({"entry_id": row["entry_id"]})
            index += 1
        return inserted

    def _grouped_ledger(self, asset_id: int) -> list[dict[str, Any]]:
        groups: dict[tuple[str, str, str], dict[str, Any]] = {}
        for row in self.ledger_for(asset_id):
            key = (row["entry_type"], row["beneficiary_kind"], row["beneficiary_identity"])
            group = groups.setdefault(
                key,
                {
                    "entry_type": key[0],
                    "beneficiary_kind": key[1],
                    "beneficiary_identity": key[2],
                    "amount_total": 0,
                    "entry_count": 0,
                },
            )
            group["amount_total"] += row["amount"]
            group["entry_count"] += 1
        return [groups[key] for key in sorted(groups)]
