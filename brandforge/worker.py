"""
Standalone job worker.

Polls the ``jobs`` table and executes claimed jobs until interrupted.
Several workers may run against the same database; the atomic claim
guarantees each job is executed by one of them.

Usage:
    brandforge-worker                       # uses APP_ENV / WORKER_* settings
    brandforge-worker --once                # drain one batch and exit
    python -m brandforge.worker --worker-id worker-a --interval-ms 1000
"""

import argparse
import logging

from brandforge import create_app
from brandforge.services.job_queue import run_worker

logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run the BrandForge job worker.")
    parser.add_argument("--env", default=None, help="Config name (default: APP_ENV)")
    parser.add_argument("--worker-id", default=None, help="Override WORKER_INSTANCE_ID")
    parser.add_argument("--interval-ms", type=int, default=None, help="Poll interval")
    parser.add_argument("--batch-size", type=int, default=None, help="Jobs per poll")
    parser.add_argument("--once", action="store_true", help="Run a single iteration and exit")
    args = parser.parse_args(argv)

    app = create_app(args.env)
    try:
        processed = run_worker(
            app,
            worker_id=args.worker_id,
            poll_interval_ms=args.interval_ms,
            batch_size=args.batch_size,
            max_iterations=1 if args.once else None,
        )
    except KeyboardInterrupt:
        logger.info("Worker interrupted, shutting down")
        return 0
    logger.info("Worker exited after processing %d job(s)", processed)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
