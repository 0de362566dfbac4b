#!/usr/bin/env python3
"""
Run the notification delivery worker pool.

Loads the active configuration, prepares the schema, starts
``delivery.worker_count`` worker threads and runs until interrupted.
With ``--once`` it drains every due job synchronously and exits (cron use).

Usage:
    python3 scripts/run_workers.py
    python3 scripts/run_workers.py --config presale.yaml --once
    python3 scripts/run_workers.py --expire-overdue --once
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

# ---------------------------------------------------------------------------
# Project root on sys.path
# ---------------------------------------------------------------------------
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the notification delivery workers")
    parser.add_argument("--config", help="Path to a presale YAML config (default: packaged defaults)")
    parser.add_argument("--once", action="store_true", help="Drain due jobs and exit")
    parser.add_argument("--max-jobs", type=int, default=None, help="Upper bound for --once")
    parser.add_argument(
        "--expire-overdue",
        action="store_true",
        help="Expire overdue UNPAID invoices before delivering",
    )
    args = parser.parse_args()

    from presale_config import get_active_config
    from presale_kernel.db.engine import (
        create_tables,
        get_session_factory,
        init_engine_from_url,
        session_scope,
    )
    from presale_kernel.db.immutability import register_immutability_listeners
    from presale_kernel.domain.clock import SystemClock
    from presale_kernel.logging_config import configure_logging
    from presale_kernel.services.delivery_worker import DeliveryWorkerPool
    from presale_kernel.services.payment_confirmation import PaymentConfirmationService
    from presale_kernel.services.senders import build_sender

    config = get_active_config(args.config)
    if not config.database_url:
        parser.error("database_url is not configured; set DATABASE_URL")
    configure_logging(level=getattr(logging, config.log_level.upper(), logging.INFO))

    init_engine_from_url(config.database_url)
    create_tables()
    register_immutability_listeners()

    clock = SystemClock()
    session_factory = get_session_factory()

    if args.expire_overdue:
        with session_scope(session_factory) as session:
            expired = PaymentConfirmationService(session, config, clock).expire_overdue()
        print(f"Expired {len(expired)} overdue invoice(s)")

    pool = DeliveryWorkerPool(session_factory, build_sender(config.delivery), config.delivery, clock)

    if args.once:
        processed = pool.drain(args.max_jobs)
        print(f"Processed {processed} job(s)")
        return 0

    stopped = threading.Event()

    def _request_stop(signum, frame):
        stopped.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    pool.start()
    print(f"Delivery workers running ({config.delivery.worker_count} threads). Ctrl-C to stop.")
    stopped.wait()
    pool.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
