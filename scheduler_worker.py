#!/usr/bin/env python3
"""Periodic producers.

- Feed poll: every FEED_POLL_TICK_MINUTES (plus once at startup)
- Discovery: daily at DISCOVERY_RUN_AT
- Batch analysis of unanalyzed intake items: hourly, when AUTO_ANALYZE is on

Each tick only enqueues jobs; pipeline_worker.py executes them. Needs
JOB_STORE=postgres so both processes see the same queue.
"""

from __future__ import annotations

import logging
import os
import sys
import time

import schedule

from regintel.config import Settings
from regintel.pipeline.service import PipelineService, build_pipeline


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


def poll_feeds(service: PipelineService) -> None:
    try:
        job_ids = service.trigger_feed_poll()
        logger.info(f"[feed-poll] queued={len(job_ids)}")
    except Exception as e:
        logger.error(f"[feed-poll] scheduling failed: {e}")


def discover(service: PipelineService) -> None:
    try:
        job_ids = service.trigger_discovery()
        logger.info(f"[discovery] queued={len(job_ids)}")
    except Exception as e:
        logger.error(f"[discovery] scheduling failed: {e}")


def analyze_backlog(service: PipelineService) -> None:
    if not service.orchestrator.is_available():
        return
    try:
        job_ids = service.submit_analysis_batch()
        logger.info(f"[analysis] queued={len(job_ids)}")
    except Exception as e:
        logger.error(f"[analysis] batch scheduling failed: {e}")


def run_scheduled() -> None:
    settings = Settings.from_env()
    if settings.job_store != "postgres":
        logger.warning("JOB_STORE is not postgres; queued jobs are only visible to this process")
    service = build_pipeline(settings)

    schedule.every(settings.feed_poll_tick_minutes).minutes.do(poll_feeds, service)
    schedule.every().day.at(settings.discovery_run_at).do(discover, service)
    if settings.auto_analyze:
        schedule.every(1).hours.do(analyze_backlog, service)

    poll_feeds(service)
    while True:
        schedule.run_pending()
        time.sleep(5)


def run_once() -> None:
    service = build_pipeline(Settings.from_env())
    poll_feeds(service)
    discover(service)
    analyze_backlog(service)


if __name__ == "__main__":
    mode = (os.environ.get("SCHEDULER_MODE") or "scheduled").lower().strip()
    if mode == "once":
        run_once()
    else:
        run_scheduled()
