"""Initial production schema for the royalty fee-split ledger."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


ENUM_DDL: tuple[str, ...] = (
    "CREATE TYPE ledger_entry_type_enum AS ENUM ('ACCRUAL', 'CLAIM_FROM_SOURCE', 'PAYOUT_TO_EARNER', 'PLATFORM_WITHDRAWAL');",
    "CREATE TYPE beneficiary_kind_enum AS ENUM ('PLATFORM', 'EARNER');",
    "CREATE TYPE job_run_status_enum AS ENUM ('RUNNING', 'SUCCESS', 'ERROR');",
)

TABLE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE asset (
        asset_id BIGINT GENERATED ALWAYS AS IDENTITY,
        name TEXT NOT NULL,
        symbol TEXT NOT NULL,
        contract_address TEXT,
        created_at_utc TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_asset PRIMARY KEY (asset_id),
        CONSTRAINT uq_asset_contract_address UNIQUE (contract_address),
        CONSTRAINT ck_asset_name_not_blank CHECK (length(btrim(name)) > 0),
        CONSTRAINT ck_asset_symbol_not_blank CHECK (length(btrim(symbol)) > 0)
    );
    """,
    """
    CREATE TABLE job_run (
        job_run_id BIGINT GENERATED ALWAYS AS IDENTITY,
        job_name TEXT NOT NULL,
        status job_run_status_enum NOT NULL,
        started_at_utc TIMESTAMPTZ NOT NULL,
        finished_at_utc TIMESTAMPTZ,
        assets_processed INTEGER NOT NULL DEFAULT 0,
        snapshots_written INTEGER NOT NULL DEFAULT 0,
        error_detail TEXT,
        CONSTRAINT pk_job_run PRIMARY KEY (job_run_id),
        CONSTRAINT ck_job_run_name_not_blank CHECK (length(btrim(job_name)) > 0),
        CONSTRAINT ck_job_run_finished_after_started CHECK (finished_at_utc IS NULL OR finished_at_utc >= started_at_utc),
        CONSTRAINT ck_job_run_counts_nonneg CHECK (assets_processed >= 0 AND snapshots_written >= 0)
    );
    """,
    """
    CREATE TABLE fee_snapshot (
        snapshot_id BIGINT GENERATED ALWAYS AS IDENTITY,
        asset_id BIGINT NOT NULL,
        job_run_id BIGINT NOT NULL,
        lifetime_fees_after BIGINT NOT NULL,
        source_ref TEXT NOT NULL,
        fetched_at_utc TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_fee_snapshot PRIMARY KEY (snapshot_id),
        CONSTRAINT fk_fee_snapshot_asset FOREIGN KEY (asset_id)
            REFERENCES asset (asset_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_fee_snapshot_job_run FOREIGN KEY (job_run_id)
            REFERENCES job_run (job_run_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_fee_snapshot_lifetime_nonneg CHECK (lifetime_fees_after >= 0),
        CONSTRAINT ck_fee_snapshot_source_ref_not_blank CHECK (length(btrim(source_ref)) > 0)
    );
    """,
    """
    CREATE TABLE royalty_agreement_version (
        agreement_version_id BIGINT GENERATED ALWAYS AS IDENTITY,
        asset_id BIGINT NOT NULL,
        platform_fee_bps INTEGER NOT NULL,
        effective_from_utc TIMESTAMPTZ NOT NULL,
        effective_to_utc TIMESTAMPTZ,
        created_by TEXT NOT NULL,
        change_reason TEXT NOT NULL,
        created_at_utc TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_royalty_agreement_version PRIMARY KEY (agreement_version_id),
        CONSTRAINT fk_royalty_agreement_version_asset FOREIGN KEY (asset_id)
            REFERENCES asset (asset_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT uq_royalty_agreement_version_asset_effective_from UNIQUE (asset_id, effective_from_utc),
        CONSTRAINT ck_royalty_agreement_version_platform_bps_range CHECK (platform_fee_bps >= 0 AND platform_fee_bps <= 10000),
        CONSTRAINT ck_royalty_agreement_version_effective_window CHECK (effective_to_utc IS NULL OR effective_to_utc > effective_from_utc),
        CONSTRAINT ck_royalty_agreement_version_created_by_not_blank CHECK (length(btrim(created_by)) > 0)
    );
    """,
    """
    CREATE TABLE royalty_agreement_share (
        share_id BIGINT GENERATED ALWAYS AS IDENTITY,
        agreement_version_id BIGINT NOT NULL,
        earner_identity TEXT NOT NULL,
        share_bps INTEGER NOT NULL,
        share_ordinal INTEGER NOT NULL,
        CONSTRAINT pk_royalty_agreement_share PRIMARY KEY (share_id),
        CONSTRAINT fk_royalty_agreement_share_version FOREIGN KEY (agreement_version_id)
            REFERENCES royalty_agreement_version (agreement_version_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT uq_royalty_agreement_share_version_earner UNIQUE (agreement_version_id, earner_identity),
        CONSTRAINT uq_royalty_agreement_share_version_ordinal UNIQUE (agreement_version_id, share_ordinal),
        CONSTRAINT ck_royalty_agreement_share_bps_range CHECK (share_bps >= 0 AND share_bps <= 10000),
        CONSTRAINT ck_royalty_agreement_share_identity_not_blank CHECK (length(btrim(earner_identity)) > 0),
        CONSTRAINT ck_royalty_agreement_share_ordinal_nonneg CHECK (share_ordinal >= 0)
    );
    """,
    """
    CREATE TABLE royalty_change_history (
        change_id BIGINT GENERATED ALWAYS AS IDENTITY,
        asset_id BIGINT NOT NULL,
        agreement_version_id BIGINT NOT NULL,
        previous_agreement_version_id BIGINT,
        platform_fee_bps INTEGER NOT NULL,
        previous_platform_fee_bps INTEGER,
        new_shares JSONB NOT NULL,
        previous_shares JSONB,
        changed_by TEXT NOT NULL,
        change_reason TEXT NOT NULL,
        fees_at_change BIGINT NOT NULL,
        changed_at_utc TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_royalty_change_history PRIMARY KEY (change_id),
        CONSTRAINT fk_royalty_change_history_asset FOREIGN KEY (asset_id)
            REFERENCES asset (asset_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_royalty_change_history_version FOREIGN KEY (agreement_version_id)
            REFERENCES royalty_agreement_version (agreement_version_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_royalty_change_history_previous_version FOREIGN KEY (previous_agreement_version_id)
            REFERENCES royalty_agreement_version (agreement_version_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT uq_royalty_change_history_agreement_version UNIQUE (agreement_version_id),
        CONSTRAINT ck_royalty_change_history_fees_nonneg CHECK (fees_at_change >= 0),
        CONSTRAINT ck_royalty_change_history_changed_by_not_blank CHECK (length(btrim(changed_by)) > 0)
    );
    """,
    """
    CREATE TABLE fee_ledger_entry (
        entry_id BIGINT GENERATED ALWAYS AS IDENTITY,
        asset_id BIGINT NOT NULL,
        entry_type ledger_entry_type_enum NOT NULL,
        beneficiary_kind beneficiary_kind_enum NOT NULL,
        beneficiary_identity TEXT NOT NULL,
        amount BIGINT NOT NULL,
        occurred_at_utc TIMESTAMPTZ NOT NULL,
        job_run_id BIGINT,
        snapshot_id BIGINT,
        agreement_version_id BIGINT,
        external_ref TEXT,
        reason TEXT,
        created_by TEXT,
        row_hash CHAR(64) NOT NULL,
        CONSTRAINT pk_fee_ledger_entry PRIMARY KEY (entry_id),
        CONSTRAINT fk_fee_ledger_entry_asset FOREIGN KEY (asset_id)
            REFERENCES asset (asset_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_fee_ledger_entry_job_run FOREIGN KEY (job_run_id)
            REFERENCES job_run (job_run_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_fee_ledger_entry_snapshot FOREIGN KEY (snapshot_id)
            REFERENCES fee_snapshot (snapshot_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_fee_ledger_entry_agreement_version FOREIGN KEY (agreement_version_id)
            REFERENCES royalty_agreement_version (agreement_version_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT uq_fee_ledger_entry_row_hash UNIQUE (row_hash),
        CONSTRAINT ck_fee_ledger_entry_amount_sign CHECK (
            (entry_type IN ('ACCRUAL', 'CLAIM_FROM_SOURCE') AND amount >= 0)
            OR (entry_type IN ('PAYOUT_TO_EARNER', 'PLATFORM_WITHDRAWAL') AND amount <= 0)
        ),
        CONSTRAINT ck_fee_ledger_entry_kind_consistency CHECK (
            (entry_type <> 'PAYOUT_TO_EARNER' OR beneficiary_kind = 'EARNER')
            AND (entry_type NOT IN ('CLAIM_FROM_SOURCE', 'PLATFORM_WITHDRAWAL') OR beneficiary_kind = 'PLATFORM')
        ),
        CONSTRAINT ck_fee_ledger_entry_payout_has_ref CHECK (entry_type <> 'PAYOUT_TO_EARNER' OR external_ref IS NOT NULL),
        CONSTRAINT ck_fee_ledger_entry_identity_not_blank CHECK (length(btrim(beneficiary_identity)) > 0)
    );
    """,
    """
    CREATE TABLE ownership_view (
        asset_id BIGINT NOT NULL,
        agreement_version_id BIGINT NOT NULL,
        platform_fee_bps INTEGER NOT NULL,
        royalty_earners JSONB NOT NULL DEFAULT '[]'::jsonb,
        lifetime_fees BIGINT NOT NULL,
        platform_accrued BIGINT NOT NULL,
        earners_accrued BIGINT NOT NULL,
        earners_claimed BIGINT NOT NULL,
        treasury_balance BIGINT NOT NULL,
        rebuilt_at_utc TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_ownership_view PRIMARY KEY (asset_id),
        CONSTRAINT fk_ownership_view_asset FOREIGN KEY (asset_id)
            REFERENCES asset (asset_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_ownership_view_agreement_version FOREIGN KEY (agreement_version_id)
            REFERENCES royalty_agreement_version (agreement_version_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_ownership_view_platform_bps_range CHECK (platform_fee_bps >= 0 AND platform_fee_bps <= 10000),
        CONSTRAINT ck_ownership_view_lifetime_nonneg CHECK (lifetime_fees >= 0)
    );
    """,
)

INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX idx_job_run_name_started_desc ON job_run (job_name, started_at_utc DESC);",
    "CREATE INDEX idx_fee_snapshot_asset_fetched_desc ON fee_snapshot (asset_id, fetched_at_utc DESC, snapshot_id DESC);",
    "CREATE INDEX idx_royalty_agreement_version_asset_effective_from_desc ON royalty_agreement_version (asset_id, effective_from_utc DESC);",
    "CREATE UNIQUE INDEX uqix_royalty_agreement_version_one_current_per_asset ON royalty_agreement_version (asset_id) WHERE effective_to_utc IS NULL;",
    "CREATE INDEX idx_royalty_change_history_asset_changed_desc ON royalty_change_history (asset_id, changed_at_utc DESC);",
    "CREATE INDEX idx_fee_ledger_entry_asset_beneficiary ON fee_ledger_entry (asset_id, beneficiary_kind, beneficiary_identity);",
    "CREATE INDEX idx_fee_ledger_entry_asset_occurred ON fee_ledger_entry (asset_id, occurred_at_utc);",
)

APPEND_ONLY_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION fn_enforce_append_only()
    RETURNS TRIGGER
    LANGUAGE plpgsql
    AS $$
    BEGIN
        RAISE EXCEPTION 'append-only violation on table %, operation % is not allowed', TG_TABLE_NAME, TG_OP;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_fee_snapshot_append_only
    BEFORE UPDATE OR DELETE ON fee_snapshot
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
    """
    CREATE TRIGGER trg_royalty_agreement_share_append_only
    BEFORE UPDATE OR DELETE ON royalty_agreement_share
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
    """
    CREATE TRIGGER trg_royalty_change_history_append_only
    BEFORE UPDATE OR DELETE ON royalty_change_history
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
    """
    CREATE TRIGGER trg_fee_ledger_entry_append_only
    BEFORE UPDATE OR DELETE ON fee_ledger_entry
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
)

CLOSE_ONLY_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION fn_enforce_agreement_close_only()
    RETURNS TRIGGER
    LANGUAGE plpgsql
    AS $$
    BEGIN
        IF TG_OP = 'DELETE' THEN
            RAISE EXCEPTION 'agreement versions cannot be deleted (agreement_version_id=%)', OLD.agreement_version_id;
        END IF;
        IF OLD.effective_to_utc IS NOT NULL THEN
            RAISE EXCEPTION 'agreement version % is closed and immutable', OLD.agreement_version_id;
        END IF;
        IF NEW.effective_to_utc IS NULL
            OR NEW.agreement_version_id IS DISTINCT FROM OLD.agreement_version_id
            OR NEW.asset_id IS DISTINCT FROM OLD.asset_id
            OR NEW.platform_fee_bps IS DISTINCT FROM OLD.platform_fee_bps
            OR NEW.effective_from_utc IS DISTINCT FROM OLD.effective_from_utc
            OR NEW.created_by IS DISTINCT FROM OLD.created_by
            OR NEW.change_reason IS DISTINCT FROM OLD.change_reason
            OR NEW.created_at_utc IS DISTINCT FROM OLD.created_at_utc THEN
            RAISE EXCEPTION 'agreement version % only permits closing effective_to_utc', OLD.agreement_version_id;
        END IF;
        RETURN NEW;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_royalty_agreement_version_close_only
    BEFORE UPDATE OR DELETE ON royalty_agreement_version
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_agreement_close_only();
    """,
)


def _execute_all(statements: Sequence[str]) -> None:
    """Execute an ordered sequence of SQL statements."""

    for statement in statements:
        try:
            op.execute(statement)
        except Exception:
            logger.exception("Migration statement failed.")
            raise


def upgrade() -> None:
    """Apply the initial schema migration."""

    logger.info("Starting initial schema migration upgrade.")
    _execute_all(ENUM_DDL)
    _execute_all(TABLE_DDL)
    _execute_all(INDEX_DDL)
    _execute_all(APPEND_ONLY_DDL)
    _execute_all(CLOSE_ONLY_DDL)
    logger.info("Completed initial schema migration upgrade.")


def downgrade() -> None:
    """Revert the initial schema migration."""

    logger.info("Starting initial schema migration downgrade.")
    _execute_all(
        (
            "DROP TRIGGER IF EXISTS trg_royalty_agreement_version_close_only ON royalty_agreement_version;",
            "DROP TRIGGER IF EXISTS trg_fee_ledger_entry_append_only ON fee_ledger_entry;",
            "DROP TRIGGER IF EXISTS trg_royalty_change_history_append_only ON royalty_change_history;",
            "DROP TRIGGER IF EXISTS trg_royalty_agreement_share_append_only ON royalty_agreement_share;",
            "DROP TRIGGER IF EXISTS trg_fee_snapshot_append_only ON fee_snapshot;",
            "DROP FUNCTION IF EXISTS fn_enforce_agreement_close_only();",
            "DROP FUNCTION IF EXISTS fn_enforce_append_only();",
            "DROP TABLE IF EXISTS ownership_view;",
            "DROP TABLE IF EXISTS fee_ledger_entry;",
            "DROP TABLE IF EXISTS royalty_change_history;",
            "DROP TABLE IF EXISTS royalty_agreement_share;",
            "DROP TABLE IF EXISTS royalty_agreement_version;",
            "DROP TABLE IF EXISTS fee_snapshot;",
            "DROP TABLE IF EXISTS job_run;",
            "DROP TABLE IF EXISTS asset;",
            "DROP TYPE IF EXISTS job_run_status_enum;",
            "DROP TYPE IF EXISTS beneficiary_kind_enum;",
            "DROP TYPE IF EXISTS ledger_entry_type_enum;",
        )
    )
    logger.info("Completed initial schema migration downgrade.")
