"""Scheduler entry point: python -m plansync.scheduler"""
import signal
import sys
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from plansync.core.config import settings
from plansync.core.logging import setup_logging, get_logger
from plansync.scheduler.subscription_resync import resync_job

setup_logging(debug=settings.DEBUG, service=f"{settings.SITE_NAME}-scheduler")
logger = get_logger("scheduler")

scheduler = BlockingScheduler(timezone="UTC")


def signal_handler(sig, frame):
    logger.info("Scheduler received stop signal")
    scheduler.shutdown(wait=False)
    sys.exit(0)


def main():
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    logger.info("Scheduler started")

    # every 15 minutes: overdue scheduled changes
    scheduler.add_job(
        resync_job,
        CronTrigger(minute="*/15", timezone="UTC"),
        id="subscription_resync",
        max_instances=1,
    )

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    main()
