from __future__ import annotations

import argparse
import asyncio

from om2chat.core.logging import configure_logging
from om2chat.persistence.db import SessionLocal
from om2chat.services.retention import get_retention_stats, retention_config, run_cleanup


async def _run(dry_run: bool) -> None:
    async with SessionLocal() as session:
        stats = await get_retention_stats(session)
        for name, config in retention_config().items():
            counts = stats.get(name, {})
            print(
                f"{name} days_to_keep={config['daysToKeep']} "
                f"total={counts.get('total', 0)} expired={counts.get('expired', 0)}"
            )
        if dry_run:
            print("dry_run=true")
            return
        report = await run_cleanup(session)
        for name, value in report.items():
            if name == "errors":
                continue
            print(f"deleted_{name}={value}")
        if report.get("errors"):
            print(f"failed_steps={','.join(report['errors'])}")


def main() -> None:
    # Same cleanup as POST /api/admin/data-retention, for cron use.
    parser = argparse.ArgumentParser(description="Delete data older than its retention window")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run(args.dry_run))


if __name__ == "__main__":
    main()
