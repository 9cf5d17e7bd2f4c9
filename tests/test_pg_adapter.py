from __future__ import annotations

from typing import Any, Optional

from psycopg import errors as pg_errors
import pytest

from royalties.errors import ConflictError, PersistenceError
from royalties.pg_adapter import PsycopgRoyaltyDB, convert_named_params, translate_db_error


class _FakeCursor:
    def __init__(self, conn: "_FakeConnection") -> None:
        self._conn = conn
        self.description: Optional[list[str]] = None

    def __enter__(self) -> "_FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def execute(self, sql: str, params: dict[str, Any]) -> None:
        self._conn.executed.append((sql, params))
        if self._conn.raise_on_execute is not None:
            raise self._conn.raise_on_execute
        self.description = ["col"] if self._conn.rows is not None else None

    def fetchall(self) -> list[dict[str, Any]]:
        return list(self._conn.rows or [])


class _FakeConnection:
    def __init__(self, rows: Optional[list[dict[str, Any]]] = None) -> None:
        self.rows = rows
        self.raise_on_execute: Optional[BaseException] = None
        self.raise_on_commit: Optional[BaseException] = None
        self.executed: list[tuple[str, dict[str, Any]]] = []
        self.row_factories: list[Any] = []
        self.committed = 0
        self.rolled_back = 0

    def cursor(self, row_factory: Any = None) -> _FakeCursor:
        self.row_factories.append(row_factory)
        return _FakeCursor(self)

    def commit(self) -> None:
        if self.raise_on_commit is not None:
            raise self.raise_on_commit
        self.committed += 1

    def rollback(self) -> None:
        self.rolled_back += 1


def test_convert_named_params_leaves_casts_alone() -> None:
    sql = "SELECT :asset_id, x::TEXT, CAST(:kind AS beneficiary_kind_enum)"
    assert convert_named_params(sql) == "SELECT %(asset_id)s, x::TEXT, CAST(%(kind)s AS beneficiary_kind_enum)"


def test_fetch_all_returns_dict_rows() -> None:
    conn = _FakeConnection(rows=[{"asset_id": 1}, {"asset_id": 2}])
    db = PsycopgRoyaltyDB(conn)  # type: ignore[arg-type]

    rows = db.fetch_all("SELECT asset_id FROM asset WHERE asset_id > :floor", {"floor": 0})

    assert rows == [{"asset_id": 1}, {"asset_id": 2}]
    assert conn.executed[0] == ("SELECT asset_id FROM asset WHERE asset_id > %(floor)s", {"floor": 0})
    assert conn.row_factories[0] is not None
    assert db.fetch_one("SELECT 1", {}) == {"asset_id": 1}


def test_fetch_all_without_result_set_is_empty() -> None:
    db = PsycopgRoyaltyDB(_FakeConnection(rows=None))  # type: ignore[arg-type]
    assert db.fetch_all("UPDATE asset SET name = :name", {"name": "x"}) == []
    assert db.fetch_one("UPDATE asset SET name = :name", {"name": "x"}) is None


def test_transaction_flags_follow_begin_commit_rollback() -> None:
    conn = _FakeConnection()
    db = PsycopgRoyaltyDB(conn)  # type: ignore[arg-type]

    db.begin()
    assert db.in_transaction is True
    db.commit()
    assert db.in_transaction is False
    db.begin()
    db.rollback()
    assert db.in_transaction is False
    assert (conn.committed, conn.rolled_back) == (1, 1)


def test_execute_maps_unique_violation_to_conflict() -> None:
    conn = _FakeConnection()
    conn.raise_on_execute = pg_errors.UniqueViolation("duplicate key")
    db = PsycopgRoyaltyDB(conn)  # type: ignore[arg-type]

    with pytest.raises(ConflictError, match="Concurrent modification detected") as exc_info:
        db.execute("INSERT INTO asset (name) VALUES (:name)", {"name": "x"})
    assert exc_info.value.details["sqlstate"] == "23505"


def test_commit_maps_serialization_failure_to_conflict() -> None:
    conn = _FakeConnection()
    conn.raise_on_commit = pg_errors.SerializationFailure("could not serialize")
    db = PsycopgRoyaltyDB(conn)  # type: ignore[arg-type]
    db.begin()

    with pytest.raises(ConflictError):
        db.commit()
    assert db.in_transaction is False


def test_other_driver_errors_become_persistence_errors() -> None:
    translated = translate_db_error(pg_errors.CheckViolation("ck_fee_ledger_entry_sign"))
    assert isinstance(translated, PersistenceError)
    assert "ck_fee_ledger_entry_sign" in str(translated)
