"""
定时任务调度器

- 每 OUTBOX_ENQUEUE_INTERVAL_SECONDS 秒把到期的 outbox 事件入队
- 每 OUTBOX_REAP_INTERVAL_SECONDS 秒回收租约过期的事件
"""

import logging
from datetime import timezone

import sentry_sdk
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from marketplace.core.config import settings
from marketplace.worker.tasks import enqueue_pending_outbox, reap_stale_outbox

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_scheduler() -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone=timezone.utc)
    scheduler.add_job(
        enqueue_pending_outbox,
        IntervalTrigger(seconds=settings.OUTBOX_ENQUEUE_INTERVAL_SECONDS),
        id="outbox_enqueue",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        reap_stale_outbox,
        IntervalTrigger(seconds=settings.OUTBOX_REAP_INTERVAL_SECONDS),
        id="outbox_reaper",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


def main() -> None:
    if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":  # pragma: no cover
        sentry_sdk.init(dsn=str(settings.SENTRY_DSN))

    scheduler = build_scheduler()
    logger.info(
        "Scheduler started. Outbox enqueue every %ss, reaper every %ss.",
        settings.OUTBOX_ENQUEUE_INTERVAL_SECONDS,
        settings.OUTBOX_REAP_INTERVAL_SECONDS,
    )
    scheduler.start()


if __name__ == "__main__":
    main()
