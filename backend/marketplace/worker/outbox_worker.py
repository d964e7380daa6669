"""
Outbox Worker - 消费 outbox 事件

从 Redis Streams 读取事件 ID，调用 OutboxDispatcher 投递到 Firestore。
可以启动多个 worker 实例，同一事件只会被一个 worker 领取（数据库 CAS）。
"""

import logging
import os
import socket
import time

import sentry_sdk
from sqlmodel import Session

from marketplace.core.config import settings
from marketplace.core.db import engine
from marketplace.core.redis_client import RedisClient, get_redis_client
from marketplace.outbox import OutboxDispatcher
from marketplace.services.firestore_service import DocumentStore, get_firestore_service
from marketplace.worker.tasks import OUTBOX_GROUP_NAME, outbox_stream_key

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def handle_message(fields: dict[str, str], store: DocumentStore) -> None:
    """
    处理一条 stream 消息

    Args:
        fields: 消息字段，包含 outbox_id
        store: 外部文档存储
    """
    outbox_id = fields["outbox_id"]
    with Session(engine) as session:
        status = OutboxDispatcher(session=session, store=store).process(outbox_id)
    if status is None:
        logger.info(f"Outbox event {outbox_id} skipped")
    else:
        logger.info(f"Outbox event {outbox_id} finished with status {status.value}")


def consume_events(redis_client: RedisClient, store: DocumentStore) -> None:
    """从 Redis Streams 消费事件"""
    stream_key = outbox_stream_key()
    consumer_name = f"worker_{socket.gethostname()}_{os.getpid()}"

    # 创建消费者组(如果不存在)
    redis_client.xgroup_create(stream_key, OUTBOX_GROUP_NAME, message_id="0")

    logger.info(f"Worker {consumer_name} started, listening to {stream_key}")

    while True:
        try:
            messages = redis_client.xreadgroup(
                group_name=OUTBOX_GROUP_NAME,
                consumer_name=consumer_name,
                streams={stream_key: ">"},
                count=1,
                block=5000,  # 阻塞 5 秒
            )
            if not messages:
                continue

            for _stream, message_list in messages:
                for message_id, fields in message_list:
                    try:
                        handle_message(fields, store)
                    except Exception as e:
                        # 事件状态由数据库维护，下一轮入队会重新投递
                        logger.exception(f"Failed to process message {message_id}: {e}")
                    redis_client.xack(stream_key, OUTBOX_GROUP_NAME, message_id)

        except KeyboardInterrupt:
            logger.info("Worker stopped by user")
            break
        except Exception as e:
            logger.error(f"Worker error: {e}")
            time.sleep(5)  # 等待 5 秒后重试


def main() -> None:
    """主函数"""
    if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":  # pragma: no cover
        sentry_sdk.init(dsn=str(settings.SENTRY_DSN))

    logger.info("Starting Outbox Worker...")
    redis_client = get_redis_client()
    store = get_firestore_service()
    try:
        consume_events(redis_client, store)
    finally:
        store.close()
        redis_client.close()


if __name__ == "__main__":
    main()
