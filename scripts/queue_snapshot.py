#!/usr/bin/env python3
"""
Print a point-in-time snapshot of the notification queue.

Usage:
    python3 scripts/queue_snapshot.py
    python3 scripts/queue_snapshot.py --config presale.yaml --job <job-id>
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(description="Notification queue snapshot")
    parser.add_argument("--config", help="Path to a presale YAML config (default: packaged defaults)")
    parser.add_argument("--job", help="Also show one job's details and health")
    args = parser.parse_args()

    from presale_config import get_active_config
    from presale_kernel.db.engine import init_engine_from_url, session_scope
    from presale_kernel.exceptions import JobNotFoundError
    from presale_kernel.selectors.queue_selector import QueueSelector

    config = get_active_config(args.config)
    if not config.database_url:
        parser.error("database_url is not configured; set DATABASE_URL")
    init_engine_from_url(config.database_url)

    with session_scope() as session:
        selector = QueueSelector(session)
        snapshot = selector.snapshot()

        print(f"Queue snapshot at {snapshot.taken_at.isoformat()}")
        for status, count in snapshot.counts.items():
            print(f"  {status:<10} {count:>6}")
        print(f"  {'TOTAL':<10} {snapshot.total:>6}")
        print(f"  in flight: {snapshot.in_flight}   stuck: {snapshot.stuck}")

        if args.job:
            try:
                job = selector.get_job(args.job)
            except JobNotFoundError as exc:
                print(f"\n{exc}")
                return 1
            print(f"\nJob {job.job_id}")
            print(f"  template:  {job.template_id} -> {job.recipient}")
            print(f"  status:    {job.status.value} ({job.health.value})")
            print(f"  attempts:  {job.attempt_count}/{job.max_attempts}")
            print(f"  next:      {job.next_attempt_at}")
            print(f"  locked by: {job.locked_by} until {job.lock_expires_at}")
            print(f"  error:     {job.last_error}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
