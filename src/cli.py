"""
Run a billing job once against the configured database.

Usage:
    python -m src.cli invoices-monthly --as-of 2026-10-01
    python -m src.cli reminders --day 5
    python -m src.cli mpesa-auto-verify --organization-id 7
"""

import argparse
import asyncio
import json
import sys
from datetime import date

from src.core.database.session import async_session, engine
from src.core.exceptions import AppException
from src.core.logging import configure_logging
from src.modules.billing_jobs.service import JOBS, run_job


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="python -m src.cli", description="Run a billing job")
    parser.add_argument("job", choices=JOBS)
    parser.add_argument("--as-of", type=date.fromisoformat, default=None, help="Run date (YYYY-MM-DD)")
    parser.add_argument("--day", type=int, default=None, help="Day of month for reminders")
    parser.add_argument("--organization-id", type=int, default=None, help="Limit to one organization")
    parser.add_argument("--log-level", default=None)
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging(args.log_level)

    try:
        async with async_session() as session:
            result = await run_job(
                session,
                args.job,
                as_of=args.as_of,
                day=args.day,
                organization_id=args.organization_id,
            )
    except AppException as exc:
        print(json.dumps({"success": False, "message": exc.message, "details": exc.details}, default=str))
        return 1
    finally:
        await engine.dispose()

    print(json.dumps({"success": True, "data": result.model_dump(mode="json")}, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
