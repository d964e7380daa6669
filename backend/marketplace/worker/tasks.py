"""
Outbox 定时任务逻辑

- enqueue_pending_outbox: 把已到期的 pending 事件 ID 写入 Redis Stream，由 outbox_worker 消费
- reap_stale_outbox: 回收租约过期的 processing 事件（分布式锁保证同一时间只有一个实例在跑）
"""

import logging
from uuid import uuid4

from sqlalchemy import Engine
from sqlmodel import Session

from marketplace.core.config import settings
from marketplace.core.redis_client import RedisClient, get_redis_client
from marketplace.crud import list_ready
from marketplace.models import utc_now
from marketplace.outbox import OutboxDispatcher
from marketplace.services.firestore_service import DocumentStore, get_firestore_service

logger = logging.getLogger(__name__)

REAP_LOCK_KEY = "outbox:reaper:lock"
REAP_LOCK_TTL_SECONDS = 60 * 5
OUTBOX_GROUP_NAME = "outbox_workers"


def outbox_stream_key() -> str:
    """按环境区分 stream key"""
    return f"outbox_events:{settings.ENVIRONMENT}"


def _default_engine() -> Engine:
    from marketplace.core.db import engine

    return engine


def enqueue_pending_outbox(
    *,
    engine: Engine | None = None,
    redis_client: RedisClient | None = None,
    limit: int = settings.OUTBOX_BATCH_LIMIT,
) -> int:
    """
    把可投递的事件 ID 入队

    同一事件可能被重复入队（上一轮还没处理完），worker 领取时的 CAS 保证只处理一次。

    Returns:
        入队的事件数
    """
    redis_client = redis_client or get_redis_client()
    with Session(engine or _default_engine()) as session:
        events = list_ready(session=session, now=utc_now(), limit=limit)
        if not events:
            logger.info("No pending outbox events.")
            return 0
        stream_key = outbox_stream_key()
        for event in events:
            redis_client.xadd(stream_key, {"outbox_id": event.id, "event_type": event.event_type})
    logger.info("Enqueued %d outbox events to %s", len(events), stream_key)
    return len(events)


def reap_stale_outbox(
    *,
    engine: Engine | None = None,
    redis_client: RedisClient | None = None,
    store: DocumentStore | None = None,
) -> int:
    """
    回收租约过期的事件

    Returns:
        回收的事件数；未拿到锁时返回 0
    """
    redis_client = redis_client or get_redis_client()
    lock_value = str(uuid4())
    acquired = redis_client.acquire_lock(
        REAP_LOCK_KEY,
        lock_value,
        expire_seconds=REAP_LOCK_TTL_SECONDS,
    )
    if not acquired:
        logger.info("Outbox reaper already running, skip this run.")
        return 0

    try:
        with Session(engine or _default_engine()) as session:
            dispatcher = OutboxDispatcher(session=session, store=store or get_firestore_service())
            released = dispatcher.release_stale()
        if released:
            logger.warning("Released %d stale outbox events", released)
        return released
    finally:
        redis_client.release_lock(REAP_LOCK_KEY, lock_value)
