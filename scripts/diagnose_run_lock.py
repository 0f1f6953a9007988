#!/usr/bin/env python3
"""
Inspect the pipeline run lock and optionally clear it.
"""

import argparse
import asyncio
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import func, select

from pricewatch.db.models import AIJob
from pricewatch.db.session import AsyncSessionLocal
from pricewatch.worker.run_lock import LOCK_KEY, RunLockManager


async def diagnose(force_unlock: bool) -> None:
    lock_manager = RunLockManager()
    try:
        lock_info = await lock_manager.get_lock_info()

        print("Run Lock Diagnosis")
        print("==================")
        print(f"LOCK_KEY: {LOCK_KEY}")
        print("")

        if not lock_info:
            print("Lock: none")
        else:
            print("Lock: present")
            print(f"  run_id: {lock_info.get('run_id')}")
            print(f"  started_at: {lock_info.get('started_at')}")
            print(f"  ttl_seconds: {lock_info.get('ttl_seconds')}")

        if force_unlock and lock_info:
            cleared = await lock_manager.force_unlock()
            print(f"Force unlock: {'cleared' if cleared else 'nothing to clear'}")
    finally:
        await lock_manager.close()

    print("")
    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(AIJob.status, func.count(AIJob.id)).group_by(AIJob.status)
        )
        counts = dict(result.all())

    print("AI jobs by status")
    print("-----------------")
    if not counts:
        print("  none")
    for status, count in sorted(counts.items()):
        print(f"  {status}: {count}")

    if counts.get("processing"):
        print("")
        print("- Jobs stuck in processing are not retried; inspect them before re-enqueueing.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Diagnose the pipeline run lock")
    parser.add_argument("--force-unlock", action="store_true", help="Delete the lock key")
    args = parser.parse_args()
    asyncio.run(diagnose(args.force_unlock))
