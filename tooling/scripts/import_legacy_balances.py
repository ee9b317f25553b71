"""Carry balances over from the legacy points system.

Reads a CSV with ``legacy_user_id`` and ``points`` columns. Each row resolves
the legacy id to an account and records one adjustment keyed on the legacy id,
so the import can be re-run after a partial failure without double crediting.
Negative balances are rejected before anything is written.

Example:
    python tooling/scripts/import_legacy_balances.py legacy_points.csv --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import sys
from pathlib import Path

from loguru import logger

IMPORT_ACTOR = "legacy-import"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Import legacy loyalty balances")
    parser.add_argument("csv_path", type=Path, help="CSV export with legacy_user_id,points columns.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate the file and report totals without writing.",
    )
    return parser.parse_args()


def read_rows(path: Path) -> list[tuple[str, int]]:
    rows: list[tuple[str, int]] = []
    with path.open(newline="", encoding="utf-8") as handle:
        for line_number, record in enumerate(csv.DictReader(handle), start=2):
            legacy_id = (record.get("legacy_user_id") or "").strip()
            raw_points = (record.get("points") or "").strip()
            if not legacy_id or not raw_points:
                raise ValueError(f"Line {line_number}: legacy_user_id and points are required")
            try:
                points = int(raw_points)
            except ValueError as exc:
                raise ValueError(f"Line {line_number}: points must be a whole number") from exc
            if points < 0:
                raise ValueError(f"Line {line_number}: legacy balances cannot be negative")
            rows.append((legacy_id, points))
    return rows


async def _run(rows: list[tuple[str, int]], session_factory=None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from favilla_api.db.session import async_session  # type: ignore import-position
    from favilla_api.models.account import IdentityScheme  # type: ignore import-position
    from favilla_api.services.identity import IdentityResolver, normalize_identity  # type: ignore import-position
    from favilla_api.services.loyalty.ledger_service import LedgerService  # type: ignore import-position

    session_factory = session_factory or async_session
    summary = {"imported": 0, "replayed": 0, "skipped": 0}
    for raw_id, points in rows:
        if points == 0:
            summary["skipped"] += 1
            continue
        _, legacy_id = normalize_identity(IdentityScheme.LEGACY, raw_id)
        async with session_factory() as session:
            account_id = await IdentityResolver(session).resolve(IdentityScheme.LEGACY, legacy_id)
            result = await LedgerService(session).adjustment(
                account_id,
                points,
                "Legacy balance import",
                IMPORT_ACTOR,
                idempotency_key=f"legacy-import:{legacy_id}",
                source_reference=f"legacy:{legacy_id}",
            )
            await session.commit()
        summary["replayed" if result.replayed else "imported"] += 1
    return summary


def main() -> int:
    args = parse_args()
    try:
        rows = read_rows(args.csv_path)
    except ValueError as exc:
        logger.error("Legacy balance file rejected", path=str(args.csv_path), error=str(exc))
        return 2
    if args.dry_run:
        logger.info(
            "Dry run: legacy balances validated",
            rows=len(rows),
            total_points=sum(points for _, points in rows),
        )
        return 0

    summary = asyncio.run(_run(rows))
    logger.success("Legacy balance import completed", **summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
