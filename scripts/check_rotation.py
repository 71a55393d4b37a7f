from __future__ import annotations

import argparse
import asyncio
import sys

from pgfleet.persistence.db import SessionLocal
from pgfleet.services.credentials import auto_rotate, check_rotation, propagate_all


def _build_parser() -> argparse.ArgumentParser:
    # Cron-friendly entry point for deployments that do not run the worker loop.
    parser = argparse.ArgumentParser(description="Check and apply scheduled superuser credential rotation")
    parser.add_argument("--dry-run", action="store_true", help="Report whether rotation is due without rotating")
    parser.add_argument("--force", action="store_true", help="Rotate even if the interval has not elapsed")
    parser.add_argument("--propagate", action="store_true", help="Push the new password to every node after rotating")
    return parser


async def _run(*, dry_run: bool, force: bool, propagate: bool) -> int:
    async with SessionLocal() as session:
        if dry_run:
            status = await check_rotation(session)
            print(f"rotation_needed={status['rotation_needed']}")
            if status.get("initialized"):
                print(f"days_since_rotation={status['days_since_rotation']}")
            return 0
        result = await auto_rotate(session, force=force, actor_id="cli")
        print(f"rotated={result['rotated']} reason={result['reason']}")
        if result["rotated"] and propagate:
            propagation = await propagate_all(session, actor_id="cli")
            summary = propagation["summary"]
            print(" ".join(f"{key}={value}" for key, value in summary.items()))
            if summary["needs_reenrollment"] or summary["failed"]:
                return 2
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(dry_run=args.dry_run, force=args.force, propagate=args.propagate))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"check_rotation failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
