"""psycopg adapter implementing the royalty database protocol."""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Optional, Sequence

import psycopg
from psycopg import errors as pg_errors
from psycopg.rows import dict_row

from royalties.errors import ConflictError, PersistenceError

logger = logging.getLogger(__name__)

_NAMED_PARAM_RE = re.compile(r"(?<!:):([a-zA-Z_][a-zA-Z0-9_]*)")

_CONFLICT_ERRORS: tuple[type[psycopg.Error], ...] = (
    pg_errors.UniqueViolation,
    pg_errors.SerializationFailure,
    pg_errors.LockNotAvailable,
)


def convert_named_params(sql: str) -> str:
    """Rewrite ``:name`` placeholders into psycopg ``%(name)s`` form."""
    return _NAMED_PARAM_RE.sub(r"%(\1)s", sql)


def translate_db_error(exc: psycopg.Error) -> Exception:
    """Map driver errors onto the royalty error taxonomy."""
    sqlstate = getattr(exc, "sqlstate", None)
    if isinstance(exc, _CONFLICT_ERRORS):
        return ConflictError(f"Concurrent modification detected: {exc}", details={"sqlstate": sqlstate})
    return PersistenceError(f"Database operation failed: {exc}", details={"sqlstate": sqlstate})


class PsycopgRoyaltyDB:
    """Royalty DB adapter over one psycopg connection (autocommit disabled)."""

    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self.conn = conn
        self._tx_started = False

    @property
    def in_transaction(self) -> bool:
        return self._tx_started

    def begin(self) -> None:
        # psycopg opens the transaction implicitly on the first statement, which
        # keeps SET TRANSACTION valid as the first command after begin().
        self._tx_started = True

    def commit(self) -> None:
        try:
            self.conn.commit()
        except psycopg.Error as exc:
            raise translate_db_error(exc) from exc
        finally:
            self._tx_started = False

    def rollback(self) -> None:
        self.conn.rollback()
        self._tx_started = False

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        converted = convert_named_params(sql)
        try:
            with self.conn.cursor(row_factory=dict_row) as cur:
                cur.execute(converted, dict(params))
                if cur.description is None:
                    return []
                return [dict(row) for row in cur.fetchall()]
        except psycopg.Error as exc:
            raise translate_db_error(exc) from exc

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        converted = convert_named_params(sql)
        try:
            with self.conn.cursor() as cur:
                cur.execute(converted, dict(params))
        except psycopg.Error as exc:
            raise translate_db_error(exc) from exc
