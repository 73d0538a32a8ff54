"""
Background Scheduler - Periodic A/B Test Evaluation

Every AB_EVALUATION_INTERVAL_MINUTES:
    1. Evaluate every running A/B test (auto-stop on max duration or a
       confident winner)
    2. Snapshot serving metrics for every model and test

Evaluation also runs after each recorded conversion; the interval job
catches tests that stop receiving traffic.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from talentml.config import get_settings
from talentml.services.ab_testing import get_ab_testing_framework
from talentml.services.metrics_collector import get_metrics_collector

logger = logging.getLogger(__name__)

settings = get_settings()
scheduler = AsyncIOScheduler()

EVALUATION_JOB_ID = "evaluate_ab_tests"


async def evaluate_ab_tests():
    """Scheduled task: evaluate running tests, then snapshot metrics."""
    framework = get_ab_testing_framework()
    results = await framework.evaluate_all_tests()

    stopped = [test_id for test_id in results if framework.get_test(test_id).status == "stopped"]
    snapshots = get_metrics_collector().take_snapshot()

    logger.info(
        f"Scheduled evaluation: {len(results)} running tests, {len(stopped)} stopped, "
        f"{len(snapshots)} metric snapshots"
    )


def start_scheduler():
    """Start the background scheduler"""
    scheduler.add_job(
        evaluate_ab_tests,
        trigger=IntervalTrigger(minutes=settings.ab_evaluation_interval_minutes),
        id=EVALUATION_JOB_ID,
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started: evaluating A/B tests every {settings.ab_evaluation_interval_minutes} minutes")


def stop_scheduler():
    """Stop the background scheduler"""
    if scheduler.running:
        scheduler.shutdown()
