#!/usr/bin/env python3
"""Credit ledger audit — replays credit_logs and compares them with usage counters.

Usage:
  python scripts/reconcile_credits.py           # Report mismatches, exit 1 if any
  python scripts/reconcile_credits.py --json    # Same, as JSON
"""
import asyncio
import json
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def reconcile(as_json: bool = False) -> int:
    from payledger.db.engine import async_session, engine
    from payledger.payments.credits import CreditManager

    try:
        mismatches = await CreditManager(async_session).find_ledger_mismatches()
    finally:
        await engine.dispose()

    if as_json:
        print(json.dumps(mismatches, indent=2))
    elif not mismatches:
        print("Ledger consistent: every usage row matches its credit log.")
    else:
        print(f"{len(mismatches)} usage row(s) out of sync:")
        for m in mismatches:
            print(f"  user {m['user_id']}")
            for bucket in ("one_time", "subscription"):
                print(f"     {bucket:<13} stored={m['stored'][bucket]:>8}  replayed={m['replayed'][bucket]:>8}")
    return 1 if mismatches else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(reconcile(as_json="--json" in sys.argv[1:])))
