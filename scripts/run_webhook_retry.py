from __future__ import annotations

import argparse
import logging
import sys
import time

from backend.app.container import build_services
from backend.app.models import utc_now
from backend.app.observability import configure_logging
from backend.app.persistence import TransientPersistenceError
from backend.app.settings import load_settings

logger = logging.getLogger("whatsapp_ingest.retry")


def main() -> int:
    parser = argparse.ArgumentParser(description="Drain unprocessed webhook logs on a fixed period.")
    parser.add_argument("--interval-seconds", type=int, default=300)
    parser.add_argument("--once", action="store_true", help="Run a single batch and exit.")
    args = parser.parse_args()

    configure_logging()
    scheduler = build_services(load_settings()).scheduler
    while True:
        try:
            scheduler.run_once(now=utc_now())
        except TransientPersistenceError as exc:
            logger.error("retry_run_failed error=%s", exc)
            if args.once:
                return 1
        if args.once:
            return 0
        time.sleep(max(1, args.interval_seconds))


if __name__ == "__main__":
    sys.exit(main())
