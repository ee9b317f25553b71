"""Run the loyalty points reconciliation once and print the drift summary.

Example:
    python tooling/scripts/run_points_reconciliation.py --account-id <uuid>
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Compare cached balances with the points ledger")
    parser.add_argument(
        "--account-id",
        default=None,
        help="Only check this account instead of every account.",
    )
    return parser.parse_args()


async def _run(account_id: str | None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from favilla_api.db.session import async_session  # type: ignore import-position
    from favilla_api.jobs.loyalty import run_points_reconciliation  # type: ignore import-position

    return await run_points_reconciliation(session_factory=async_session, account_id=account_id)


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.account_id))
    logger.success(
        "Points reconciliation completed",
        accounts_checked=summary.get("accounts_checked", 0),
        drift_count=summary.get("drift_count", 0),
    )
    return 1 if summary.get("drift_count") else 0


if __name__ == "__main__":
    sys.exit(main())
