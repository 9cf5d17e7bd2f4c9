#!/usr/bin/env python3
"""Operator CLI for royalty split updates, payouts, snapshots, and reconciliation."""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
import sys
from typing import Any, Optional

import psycopg

# Ensure repository root is importable when script is executed by path.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from royalties.agreements import ShareSpec
from royalties.common import RoyaltyClock, decimal_to_str, to_display_units, transaction
from royalties.config import RoyaltyConfig, configure_logging, load_royalty_config
from royalties.errors import RoyaltyError, ValidationError
from royalties.fee_snapshots import HttpFeeSource, run_fee_snapshot_job
from royalties.ledger_store import list_earner_balances, record_platform_withdrawal, record_source_claim
from royalties.ownership_view import refresh_ownership_view
from royalties.payout_claims import HttpTransferClient, PayoutClaimHandler
from royalties.pg_adapter import PsycopgRoyaltyDB
from royalties.reconciliation import build_reconciliation_report
from royalties.split_update import SplitUpdateProtocol, SplitUpdateRequest, replay_side_writes


def _parse_share(value: str) -> ShareSpec:
    identity, sep, raw_bps = value.rpartition("=")
    if not sep or identity.strip() == "":
        raise argparse.ArgumentTypeError(f"Share must be IDENTITY=BPS: {value}")
    try:
        bps = int(raw_bps.strip())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid bps in share: {value}") from exc
    return ShareSpec(earner_identity=identity.strip(), share_bps=bps)


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid integer: {value}") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"Value must be > 0: {value}")
    return parsed


def _resolve_connection(args: argparse.Namespace) -> psycopg.Connection[Any]:
    if args.dsn:
        return psycopg.connect(args.dsn, autocommit=False)

    host = args.host or os.getenv("DB_HOST") or os.getenv("TEST_DB_HOST")
    port = args.port or os.getenv("DB_PORT") or os.getenv("TEST_DB_PORT")
    dbname = args.dbname or os.getenv("DB_NAME") or os.getenv("TEST_DB_NAME")
    user = args.user or os.getenv("DB_USER") or os.getenv("TEST_DB_USER")
    password = args.password or os.getenv("DB_PASSWORD") or os.getenv("TEST_DB_PASSWORD")

    missing = [
        key
        for key, value in (
            ("host", host),
            ("port", port),
            ("dbname", dbname),
            ("user", user),
            ("password", password),
        )
        if not value
    ]
    if missing:
        raise SystemExit(
            "Missing DB connection args. Provide --dsn or set --host/--port/--dbname/--user/--password "
            f"(missing: {', '.join(missing)})."
        )

    return psycopg.connect(
        host=host,
        port=port,
        dbname=dbname,
        user=user,
        password=password,
        autocommit=False,
    )


def _build_parser(config: RoyaltyConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Royalty fee-split ledger CLI")
    parser.add_argument("--dsn", help="PostgreSQL DSN (optional)")
    parser.add_argument("--host", help="DB host")
    parser.add_argument("--port", help="DB port")
    parser.add_argument("--dbname", help="DB name")
    parser.add_argument("--user", help="DB user")
    parser.add_argument("--password", help="DB password")

    subparsers = parser.add_subparsers(dest="command", required=True)

    split_cmd = subparsers.add_parser("update-split", help="Replace an asset's current royalty split")
    split_cmd.add_argument("--asset-id", required=True, type=int)
    split_cmd.add_argument("--platform-bps", type=int, default=config.default_platform_fee_bps)
    split_cmd.add_argument(
        "--share",
        dest="shares",
        action="append",
        required=True,
        type=_parse_share,
        help="Earner share as IDENTITY=BPS (repeatable, order preserved)",
    )
    split_cmd.add_argument("--actor", required=True)
    split_cmd.add_argument("--reason", default="manual_update")

    claim_cmd = subparsers.add_parser("claim", help="Pay out an earner's owed balance")
    claim_cmd.add_argument("--asset-id", required=True, type=int)
    claim_cmd.add_argument("--earner", required=True)
    claim_cmd.add_argument("--actor", required=True)
    claim_cmd.add_argument("--reason", default="Manual payout")

    reconcile_cmd = subparsers.add_parser("reconcile", help="Verify ledger invariants (exit 2 on failure)")
    reconcile_cmd.add_argument("--asset-id", type=int, default=None)

    job_cmd = subparsers.add_parser("snapshot-job", help="Ingest lifetime fee totals and accrue deltas")
    job_cmd.add_argument("--asset-id", dest="asset_ids", type=int, action="append", default=None)

    view_cmd = subparsers.add_parser("rebuild-view", help="Re-run ownership view and change history writes")
    view_cmd.add_argument("--asset-id", required=True, type=int)

    balances_cmd = subparsers.add_parser("balances", help="Show accrued/claimed/owed per earner")
    balances_cmd.add_argument("--asset-id", required=True, type=int)

    for name, help_text in (
        ("source-claim", "Record fees claimed from the external venue into the treasury"),
        ("platform-withdrawal", "Record a platform withdrawal from the treasury"),
    ):
        cmd = subparsers.add_parser(name, help=help_text)
        cmd.add_argument("--asset-id", required=True, type=int)
        cmd.add_argument("--amount", required=True, type=_positive_int)
        cmd.add_argument("--external-ref", required=True)
        cmd.add_argument("--actor", required=True)
        cmd.add_argument("--reason", default=None)

    return parser


def _fee_source(config: RoyaltyConfig) -> Optional[HttpFeeSource]:
    if not config.fee_source_base_url:
        return None
    return HttpFeeSource(
        base_url=config.fee_source_base_url,
        api_key=config.fee_source_api_key,
        timeout_seconds=config.fee_source_timeout_seconds,
    )


def _run(args: argparse.Namespace, db: PsycopgRoyaltyDB, config: RoyaltyConfig) -> int:
    clock = RoyaltyClock()

    if args.command == "update-split":
        protocol = SplitUpdateProtocol(db, clock=clock, config=config, fee_source=_fee_source(config))
        result = protocol.update_split(
            SplitUpdateRequest(
                asset_id=args.asset_id,
                platform_fee_bps=args.platform_bps,
                shares=tuple(args.shares),
                actor=args.actor,
                reason=args.reason,
            )
        )
        print(json.dumps(result.to_payload(), sort_keys=True))
        return 0

    if args.command == "claim":
        if not config.transfer_base_url:
            raise ValidationError("ROYALTY_TRANSFER_BASE_URL is required for claims")
        client = HttpTransferClient(base_url=config.transfer_base_url, api_key=config.transfer_api_key)
        handler = PayoutClaimHandler(db, client, clock=clock, config=config)
        claim = handler.claim(args.asset_id, args.earner, args.reason, args.actor)
        print(json.dumps(claim.to_payload(), sort_keys=True))
        return 0

    if args.command == "reconcile":
        report = build_reconciliation_report(db, args.asset_id)
        print(json.dumps(report.to_payload(), sort_keys=True))
        return 2 if report.has_failures else 0

    if args.command == "snapshot-job":
        source = _fee_source(config)
        if source is None:
            raise ValidationError("ROYALTY_FEE_SOURCE_BASE_URL is required for snapshot-job")
        job = run_fee_snapshot_job(
            db,
            source,
            clock=clock,
            asset_ids=args.asset_ids,
            on_asset_committed=lambda asset_id: refresh_ownership_view(db, asset_id, clock=clock),
        )
        print(json.dumps(job.to_payload(), sort_keys=True))
        return 0 if not job.failed_asset_ids else 2

    if args.command == "rebuild-view":
        replay = replay_side_writes(db, args.asset_id, clock=clock)
        payload = {
            "asset_id": replay.asset_id,
            "agreement_version_id": replay.agreement_version_id,
            "view_rebuilt": replay.view_rebuilt,
            "history_inserted": replay.history_inserted,
        }
        print(json.dumps(payload, sort_keys=True))
        return 0

    if args.command == "balances":
        with transaction(db):
            balances = list_earner_balances(db, args.asset_id)
        payload = {
            "asset_id": args.asset_id,
            "earners": [
                {
                    "earner_identity": balance.identity,
                    "accrued": balance.accrued,
                    "claimed": balance.claimed,
                    "owed": balance.owed,
                    "owed_display": decimal_to_str(to_display_units(balance.owed, config.display_decimals)),
                }
                for balance in balances
            ],
        }
        print(json.dumps(payload, sort_keys=True))
        return 0

    record = record_source_claim if args.command == "source-claim" else record_platform_withdrawal
    with transaction(db):
        entry_id = record(
            db,
            args.asset_id,
            args.amount,
            external_ref=args.external_ref,
            actor=args.actor,
            occurred_at_utc=clock.now_utc(),
            reason=args.reason,
        )
    refresh_ownership_view(db, args.asset_id, clock=clock)
    print(json.dumps({"asset_id": args.asset_id, "entry_id": entry_id, "amount": args.amount}, sort_keys=True))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    config = load_royalty_config()
    configure_logging(config)
    parser = _build_parser(config)
    args = parser.parse_args(argv)

    conn = _resolve_connection(args)
    db = PsycopgRoyaltyDB(conn)
    try:
        return _run(args, db, config)
    except RoyaltyError as exc:
        print(json.dumps(exc.to_payload(), sort_keys=True, default=str))
        return 1
    finally:
        conn.close()


if __name__ == "__main__":
    raise SystemExit(main())
