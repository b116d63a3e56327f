"""Run the job processor and scheduler until interrupted, without the HTTP API.

The API process already runs its own workers against its own job store;
this entry point is for headless deployments driven by the scheduler and
must not share a ``JOB_DB_PATH`` with a running API.

Usage::

    python -m nfse_sync.workers --config config.yaml
"""
from __future__ import annotations

import argparse
import logging
import signal
import threading

from nfse_sync.core.config import load_settings

from .runtime import build_runtime

logger = logging.getLogger("nfse_sync.workers")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="NFS-e ingestion worker: job processor plus scheduler")
    parser.add_argument("--config", help="YAML settings file (defaults to $NFSE_SYNC_CONFIG)")
    parser.add_argument("--log-level", help="overrides LOG_LEVEL")
    parser.add_argument(
        "--once",
        action="store_true",
        help="run tenant discovery and a single processor tick, then exit",
    )
    args = parser.parse_args(argv)

    settings = load_settings(args.config)
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    runtime = build_runtime(settings)

    if args.once:
        runtime.scheduler.discover_due_tenants()
        processed = runtime.processor.run_once()
        logger.info("processed %d jobs", len(processed))
        runtime.stop()
        return

    stop_requested = threading.Event()

    def _request_stop(signum: int, _frame: object) -> None:
        logger.info("received signal %s, shutting down", signum)
        stop_requested.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    runtime.start()
    try:
        stop_requested.wait()
    finally:
        runtime.stop()


if __name__ == "__main__":
    main()
