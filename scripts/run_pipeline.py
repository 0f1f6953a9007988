#!/usr/bin/env python3
"""
Run one price pipeline pass from the command line.

Usage:
    python scripts/run_pipeline.py [--force] [--no-lock]
"""

import argparse
import asyncio
import json
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pricewatch.db.models import Base
from pricewatch.db.session import engine
from pricewatch.logging_config import setup_logging
from pricewatch.worker.tasks import task_runner


async def main(force: bool, use_lock: bool) -> int:
    setup_logging()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        if use_lock:
            result = await task_runner.run_pipeline(force=force, trigger="cli")
        else:
            summary = await task_runner.pipeline.run(force=force, trigger="cli")
            result = {"success": True, "summary": summary.to_dict(), "results": summary.results}
    finally:
        await task_runner.close()
        await engine.dispose()

    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the price pipeline once")
    parser.add_argument("--force", action="store_true", help="Ignore scrape frequency")
    parser.add_argument("--no-lock", action="store_true", help="Skip the Redis run lock")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(force=args.force, use_lock=not args.no_lock)))
