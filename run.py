#!/usr/bin/env python3
"""
Loan Lifecycle Sweeper Entry Point

Runs the periodic housekeeping of the orchestrator: expires contracts whose
signature window has passed and sends payment reminders once a day.
"""

import sys
import time
from datetime import datetime, timezone

from loan_lifecycle.config import get_config
from loan_lifecycle.logging_config import setup_logging
from loan_lifecycle.orchestrator import LoanLifecycleOrchestrator


def run_sweeper(once: bool = False) -> None:
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    orchestrator = LoanLifecycleOrchestrator.from_config(config)

    logger.info(f"Sweeper started, interval {config.expiry_sweep_interval_seconds}s")
    last_reminder_day = None
    try:
        while True:
            now = datetime.now(timezone.utc)
            expired = orchestrator.expire_overdue(now)
            if expired:
                logger.info(f"Expired contracts: {', '.join(expired)}")

            if last_reminder_day != now.date():
                orchestrator.send_payment_reminders(now.date())
                last_reminder_day = now.date()

            if once:
                break
            time.sleep(config.expiry_sweep_interval_seconds)
    finally:
        orchestrator.close()
        logger.info("Sweeper stopped")


if __name__ == "__main__":
    try:
        run_sweeper(once="--once" in sys.argv[1:])
    except KeyboardInterrupt:
        pass
