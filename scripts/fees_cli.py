#!/usr/bin/env python3
"""
Operator CLI for the fee engine.

Reads settings through get_active_config() (--config, $FEES_CONFIG_PATH, or
the packaged engine.yaml).  $DATABASE_URL or --db-url selects the database.

Usage:
    python3 scripts/fees_cli.py <command> [options]

Examples:
    # Create tables
    python3 scripts/fees_cli.py init-db

    # Bill every active student for March 2025
    python3 scripts/fees_cli.py run-billing --month 3 --year 2025

    # Record a cash payment, auto-applied oldest-due-first
    python3 scripts/fees_cli.py record-payment --family <uuid> --amount 800.00 --method CASH

    # Record a payment split across two allocations
    python3 scripts/fees_cli.py record-payment --family <uuid> --amount 700 \\
        --target <allocation-uuid>=400 --target <allocation-uuid>=300

    # Show a family's allocations, then flip past-due ones to OVERDUE
    python3 scripts/fees_cli.py list-allocations --family <uuid>
    python3 scripts/fees_cli.py overdue --mark
"""

from __future__ import annotations

import argparse
import os
import sys
from datetime import date
from pathlib import Path
from uuid import UUID, uuid4

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _target(value: str) -> tuple[str, str]:
    allocation_id, sep, amount = value.partition("=")
    if not sep:
        raise argparse.ArgumentTypeError(f"expected <allocation-id>=<amount>, got {value!r}")
    return allocation_id, amount


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fee allocation and payment reconciliation engine.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to engine YAML.")
    parser.add_argument("--db-url", default=None, help="Database URL (overrides config).")
    parser.add_argument(
        "--actor-id",
        default=os.environ.get("FEES_ACTOR_ID"),
        help="Actor UUID recorded on writes (default: $FEES_ACTOR_ID or a new UUID).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create all tables.")

    calc = sub.add_parser("calculate", help="Show a student's fee for a period.")
    calc.add_argument("--student", required=True, type=UUID)
    calc.add_argument("--month", required=True, type=int)
    calc.add_argument("--year", required=True, type=int)

    billing = sub.add_parser("run-billing", help="Bill all active students for a period.")
    billing.add_argument("--month", type=int, default=None, help="Default: current month.")
    billing.add_argument("--year", type=int, default=None, help="Default: current year.")
    billing.add_argument("--workers", type=int, default=None, help="Parallel students.")
    billing.add_argument(
        "--student", action="append", type=UUID, default=None,
        help="Bill only this student (repeatable).",
    )

    pay = sub.add_parser("record-payment", help="Record and apply a family payment.")
    pay.add_argument("--family", required=True, type=UUID)
    pay.add_argument("--amount", required=True)
    pay.add_argument("--method", default="CASH")
    pay.add_argument(
        "--date",
        type=lambda s: date.fromisoformat(s),
        default=None,
        help="Payment date (YYYY-MM-DD). Default: today.",
    )
    pay.add_argument("--reference", default=None)
    pay.add_argument(
        "--target", action="append", type=_target, default=None,
        help="<allocation-id>=<amount> (repeatable). Omit to auto-apply.",
    )
    pay.add_argument(
        "--no-apply", action="store_true", help="Keep the whole amount as unapplied credit.",
    )

    listing = sub.add_parser("list-allocations", help="List allocations.")
    listing.add_argument("--family", type=UUID, default=None)
    listing.add_argument("--student", type=UUID, default=None)
    listing.add_argument("--month", type=int, default=None)
    listing.add_argument("--year", type=int, default=None)
    listing.add_argument("--status", default=None)

    overdue = sub.add_parser("overdue", help="Summarize (and optionally mark) overdue allocations.")
    overdue.add_argument(
        "--as-of", type=lambda s: date.fromisoformat(s), default=None,
        help="Reference date (YYYY-MM-DD). Default: today.",
    )
    overdue.add_argument("--mark", action="store_true", help="Flip past-due PENDING rows to OVERDUE.")

    return parser.parse_args(argv)


def _fail(result) -> int:
    print(f"ERROR [{result.error_kind.value}]: {result.message}", file=sys.stderr)
    for key, value in sorted(result.details.items()):
        print(f"  {key}: {value}", file=sys.stderr)
    return 1


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    actor_id = UUID(args.actor_id) if args.actor_id else uuid4()

    # Lazy imports so we fail fast on args first
    from fees_config import get_active_config
    from fees_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
    from fees_kernel.domain.clock import SystemClock
    from fees_kernel.logging_config import LogContext, configure_logging
    from fees_services import FeeEngine

    try:
        settings = get_active_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: Failed to load config: {e}", file=sys.stderr)
        return 1

    configure_logging(level=settings.logging.level)
    LogContext.set(actor_id=str(actor_id))

    db = settings.database
    try:
        init_engine_from_url(
            args.db_url or db.url,
            echo=db.echo,
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
        )
    except Exception as e:
        print(f"ERROR: Database init failed: {e}", file=sys.stderr)
        return 1

    if args.command == "init-db":
        import fees_batch.models  # noqa: F401

        create_tables()
        print("Tables created.")
        return 0

    engine = FeeEngine(get_session_factory(), settings)

    if args.command == "calculate":
        result = engine.calculate_fee(args.student, args.month, args.year)
        if not result.is_success:
            return _fail(result)
        calc = result.value
        print(f"Student {calc.student_id} {calc.period}")
        for line in calc.lines:
            print(f"  {line.item_kind.value:<8} {line.item_name or '-':<30} {line.unit_amount:>10}")
        print(f"  gross {calc.gross}  discount {calc.discount}  net {calc.net}")
        return 0

    if args.command == "run-billing":
        current = SystemClock().current_period()
        month = current.month if args.month is None else args.month
        year = current.year if args.year is None else args.year
        result = engine.run_billing_cycle(
            month, year, actor_id,
            student_ids=args.student, max_workers=args.workers,
        )
        if not result.is_success:
            return _fail(result)
        run = result.value
        print(
            f"Run {run.run_id} {run.year}-{run.month:02d}: {run.status.value} "
            f"(succeeded={run.succeeded}, skipped={run.skipped}, failed={run.failed})"
        )
        for outcome in run.failures[:10]:
            print(f"  {outcome.student_id}: {outcome.error_code} {outcome.error_message}")
        if len(run.failures) > 10:
            print(f"  ... and {len(run.failures) - 10} more failures.")
        return 0 if run.failed == 0 else 1

    if args.command == "record-payment":
        targets = [] if args.no_apply else args.target
        result = engine.record_payment(
            args.family,
            args.amount,
            args.method.upper(),
            args.date or date.today(),
            actor_id,
            targets=targets,
            reference=args.reference,
        )
        if not result.is_success:
            return _fail(result)
        receipt = result.value
        print(
            f"Payment {receipt.payment.id}: amount {receipt.payment.amount}, "
            f"applied {receipt.payment.applied_amount}, unapplied {receipt.unapplied_amount}"
        )
        for allocation in receipt.allocations:
            print(
                f"  {allocation.id} {allocation.year}-{allocation.month:02d} "
                f"{allocation.status.value:<8} paid {allocation.paid_amount}/{allocation.net_amount}"
            )
        return 0

    if args.command == "list-allocations":
        result = engine.list_allocations(
            student_id=args.student,
            family_id=args.family,
            month=args.month,
            year=args.year,
            status=args.status.upper() if args.status else None,
        )
        if not result.is_success:
            return _fail(result)
        for a in result.value:
            print(
                f"{a.id} {a.student_id} {a.year}-{a.month:02d} due {a.due_date} "
                f"{a.status.value:<8} net {a.net_amount:>10} paid {a.paid_amount:>10}"
            )
        print(f"{len(result.value)} allocation(s)")
        return 0

    if args.command == "overdue":
        if args.mark:
            marked = engine.mark_overdue(actor_id, as_of=args.as_of)
            if not marked.is_success:
                return _fail(marked)
            print(f"Marked {marked.value} allocation(s) OVERDUE.")
        result = engine.overdue_summary(as_of=args.as_of)
        if not result.is_success:
            return _fail(result)
        summary = result.value
        print(
            f"As of {summary.as_of}: {summary.total_overdue} overdue, "
            f"{summary.total_amount} outstanding across {summary.affected_families} families"
            + (f", oldest due {summary.oldest_due_date}" if summary.oldest_due_date else "")
        )
        return 0

    return 1


if __name__ == "__main__":
    sys.exit(main())
