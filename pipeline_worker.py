#!/usr/bin/env python3
"""Pipeline job worker.

Runs one bounded thread pool per job class (ingest, analysis, discovery,
feed-poll) until SIGINT/SIGTERM.

WORKER_MODE=once drains every queue a single time and exits (useful with
JOB_STORE=postgres from cron).
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading

from regintel.config import Settings
from regintel.jobs.dispatcher import JobClass
from regintel.pipeline.service import build_pipeline


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


def run_once() -> None:
    service = build_pipeline(Settings.from_env())
    for job_class in JobClass:
        ran = service.dispatcher.drain(job_class)
        logger.info(f"[{job_class.value}] ran={ran} stats={service.dispatcher.stats(job_class)}")


def run_forever() -> None:
    service = build_pipeline(Settings.from_env())
    pool = service.worker_pool()
    stop = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        stop.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    pool.start()
    concurrency = {c.value: n for c, n in service.concurrency.items()}
    logger.info(f"Workers started: {concurrency}")
    stop.wait()
    pool.stop()


if __name__ == "__main__":
    mode = (os.environ.get("WORKER_MODE") or "daemon").lower().strip()
    if mode == "once":
        run_once()
    else:
        run_forever()
