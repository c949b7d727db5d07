"""Standalone lead expiration worker.

Runs the cron-driven sweep loop on the main thread until SIGTERM or SIGINT. Use it
instead of the in-API scheduler by setting ``LEAD_EXPIRATION_RUN_IN_API=false`` on the
API processes. Notifications are persisted here; live push reaches only connections
held by this process, so API clients pick them up on their next fetch.
"""

from __future__ import annotations

import argparse
import logging
import signal
from types import FrameType

from leadflow.core.config import get_settings
from leadflow.core.database import SessionLocal
from leadflow.crm.expiration.scheduler import LeadExpirationScheduler
from leadflow.logging import configure_logging
from leadflow.otel import setup_otel


logger = logging.getLogger("leadflow.lifecycle")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="leadflow-expiration-worker")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    args = parser.parse_args(argv)

    configure_logging()
    settings = get_settings()
    setup_otel("lead-expiration-worker", settings.otel_enabled)
    scheduler = LeadExpirationScheduler.from_settings(settings, SessionLocal, None)

    if args.once:
        result = scheduler.trigger_now()
        return 0 if result.success else 1

    if not scheduler.config.enabled:
        logger.info("lead_expiration_worker_disabled")
        return 0

    def _handle_signal(signum: int, frame: FrameType | None) -> None:
        logger.info("lead_expiration_worker_signal", extra={"reason": signal.Signals(signum).name})
        scheduler.stop(timeout=0)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    scheduler.run_forever()
    if scheduler.fatal_error is not None:
        logger.error("lead_expiration_worker_fail_stop", extra={"error": scheduler.fatal_error})
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
