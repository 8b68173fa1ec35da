#!/usr/bin/env python3
"""Inspect and release invoice claims left processing after a failed payout.

Before releasing, check the Lightning node: a payment that timed out may still
have settled, in which case the invoice should be marked processed instead.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

SCRIPT_ROOT = Path(__file__).resolve().parents[1]
if str(SCRIPT_ROOT) not in sys.path:
    sys.path.insert(0, str(SCRIPT_ROOT))

from forwarding.ledger import InvoiceLedger  # noqa: E402
from forwarding.payment_store import PaymentRecordStore  # noqa: E402


def _print_json(value: object) -> None:
    print(json.dumps(value, indent=2, sort_keys=True))


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s | %(message)s",
        stream=sys.stderr,
    )
    ap = argparse.ArgumentParser(description="Inspect or release stuck invoice claims")
    ap.add_argument("--db", required=True, help="Path to the forwarding SQLite database")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("list-stuck", help="List invoices still marked processing")

    show = sub.add_parser("show", help="Show the ledger entry and recorded payments for one invoice")
    show.add_argument("store_id")
    show.add_argument("invoice_id")

    release = sub.add_parser("release", help="Clear the processing flag so the invoice can be retried")
    release.add_argument("store_id")
    release.add_argument("invoice_id")
    release.add_argument(
        "--force",
        action="store_true",
        help="Release even when payments are already recorded for the invoice",
    )
    args = ap.parse_args(argv)

    db_path = Path(args.db).expanduser().resolve()
    if not db_path.exists():
        raise SystemExit(f"missing {db_path}")

    ledger = InvoiceLedger(db_path)
    payments = PaymentRecordStore(db_path)
    try:
        if args.command == "list-stuck":
            _print_json([entry.as_dict() for entry in ledger.list_stuck()])
            return 0

        entry = ledger.get(args.store_id, args.invoice_id)
        if entry is None:
            print(f"no ledger entry for {args.store_id}/{args.invoice_id}", file=sys.stderr)
            return 1
        records = payments.list(args.store_id, args.invoice_id)

        if args.command == "show":
            _print_json({"invoice": entry.as_dict(), "payments": [record.as_dict() for record in records]})
            return 0

        if entry.is_processed:
            print(f"{args.store_id}/{args.invoice_id} is already processed", file=sys.stderr)
            return 1
        if records and not args.force:
            kinds = ", ".join(sorted({record.kind for record in records}))
            print(
                f"{args.store_id}/{args.invoice_id} has recorded payments ({kinds}); re-run with --force to release",
                file=sys.stderr,
            )
            return 1
        released = ledger.release(args.store_id, args.invoice_id)
        _print_json({"store_id": args.store_id, "invoice_id": args.invoice_id, "released": released})
        return 0 if released else 1
    finally:
        ledger.close()
        payments.close()


if __name__ == "__main__":
    raise SystemExit(main())
