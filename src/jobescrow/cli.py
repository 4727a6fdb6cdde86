"""Job escrow CLI.

Usage:
    python -m jobescrow.cli quote --amount 100 --cut 10 --deposit 50
    python -m jobescrow.cli demo
    python -m jobescrow.cli demo --fail-seller --event-log data/events.jsonl
    python -m jobescrow.cli demo --file logo.svg --file logo.png
    python -m jobescrow.cli verify-log --path data/events.jsonl
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from jobescrow.arithmetic import percentage_of
from jobescrow.config import DEFAULT_CONFIG_DIR, EscrowConfig
from jobescrow.errors import EscrowError, InvalidParameter
from jobescrow.ledger.memory import InMemoryLedger
from jobescrow.logging_config import setup_logging
from jobescrow.models.digest import bundle_digest, content_digest
from jobescrow.persistence.event_log import EventLog
from jobescrow.service import JobEscrowService, ServiceResult


def _print_step(label: str, result: ServiceResult, ledger: InMemoryLedger) -> None:
    print(json.dumps(
        {
            "step": label,
            "success": result.success,
            "error_code": result.error_code,
            "errors": result.errors,
            "data": result.data,
            "balances": {
                party: ledger.balance_of(party)
                for party in ("buyer", "creator", "seller")
            },
        },
        indent=2,
        default=str,
    ))


def _deliverable_digest(paths: list[str]) -> bytes:
    """One file submits its own digest; several submit their bundle digest."""
    if not paths:
        return content_digest(b"delivered work")
    digests = [content_digest(Path(p).read_bytes()) for p in paths]
    if len(digests) == 1:
        return digests[0]
    return bundle_digest(digests)


def cmd_quote(args: argparse.Namespace) -> int:
    """Print the derived cut and expected deposit for a price."""
    try:
        for label, pct in (("cut", args.cut), ("deposit", args.deposit)):
            if not 0 <= pct <= 100:
                raise InvalidParameter(f"{label} percentage must be within [0, 100], got {pct}")
        quote = {
            "amount": args.amount,
            "cut_amount": percentage_of(args.amount, args.cut),
            "expected_deposit": percentage_of(args.amount, args.deposit),
        }
    except EscrowError as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    print(json.dumps(quote, indent=2))
    return 0


def cmd_demo(args: argparse.Namespace) -> int:
    """Run the deposit → submit → final payment scenario in memory."""
    config: EscrowConfig = args.escrow_config
    try:
        submission = _deliverable_digest(args.files)
    except OSError as e:
        print(f"Failed: cannot read deliverable: {e}", file=sys.stderr)
        return 1

    log_path = args.event_log or config.event_log_path
    event_log = EventLog(storage_path=Path(log_path)) if log_path else None

    ledger = InMemoryLedger()
    ledger.mint("buyer", args.amount)
    if args.fail_seller:
        ledger.reject_incoming("seller")
    service = JobEscrowService(ledger, config=config, event_log=event_log)

    created = service.create_job(
        "demo job", seller="seller", amount=args.amount,
        cut_percentage=args.cut, deposit_percentage=args.deposit,
        creator="creator",
    )
    _print_step("create", created, ledger)
    if not created.success:
        return 1
    job_id = created.data["job_id"]
    deposit = created.data["expected_deposit"]

    steps = [
        ("deposit", lambda: service.receive_funds(job_id, deposit, caller="buyer")),
        ("submit", lambda: service.submit(job_id, submission, caller="creator")),
        ("final payment", lambda: service.receive_funds(
            job_id, args.amount - deposit, caller="buyer",
        )),
    ]
    final: Optional[ServiceResult] = None
    for label, step in steps:
        final = step()
        _print_step(label, final, ledger)
        if not final.success:
            break

    print(json.dumps(service.job_view(job_id).data, indent=2, default=str))
    return 0 if final is not None and final.success else 1


def cmd_verify_log(args: argparse.Namespace) -> int:
    """Load an audit log, verifying every record's hash."""
    path = Path(args.path)
    if not path.exists():
        print(f"Failed: no such log: {path}", file=sys.stderr)
        return 1
    try:
        log = EventLog(storage_path=path)
    except (ValueError, OSError) as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    last = log.last_event
    print(json.dumps(
        {
            "path": str(path),
            "events": log.count,
            "head_hash": last.event_hash if last is not None else None,
        },
        indent=2,
    ))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jobescrow",
        description="Job escrow — commissioned work escrow CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_DIR,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument("--log-level", help="Override the configured log level")
    sub = parser.add_subparsers(dest="command")

    # quote
    p_quote = sub.add_parser("quote", help="Derive cut and deposit for a price")
    p_quote.add_argument("--amount", type=int, required=True, help="Total price (smallest unit)")
    p_quote.add_argument("--cut", type=int, required=True, help="Creator cut percentage")
    p_quote.add_argument("--deposit", type=int, required=True, help="Deposit percentage")

    # demo
    p_demo = sub.add_parser("demo", help="Run an end-to-end job in memory")
    p_demo.add_argument("--amount", type=int, default=100, help="Total price (default: 100)")
    p_demo.add_argument("--cut", type=int, default=10, help="Cut percentage (default: 10)")
    p_demo.add_argument("--deposit", type=int, default=50, help="Deposit percentage (default: 50)")
    p_demo.add_argument("--event-log", help="Append audit events to this JSONL file")
    p_demo.add_argument(
        "--file", dest="files", action="append", default=[],
        help="Deliverable file to submit (repeatable; digests are bundled)",
    )
    p_demo.add_argument(
        "--fail-seller", action="store_true",
        help="Make the seller reject payment to show rollback",
    )

    # verify-log
    p_verify = sub.add_parser("verify-log", help="Verify an audit log's integrity")
    p_verify.add_argument("--path", required=True, help="JSONL event log path")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    args.escrow_config = EscrowConfig.from_env(args.config)
    setup_logging(args.log_level or args.escrow_config.log_level)

    commands = {
        "quote": cmd_quote,
        "demo": cmd_demo,
        "verify-log": cmd_verify_log,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
