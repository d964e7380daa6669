"""
启动前检查脚本

worker / scheduler 启动前等待数据库和 Redis 就绪。
主要用于 Docker Compose 环境：数据库和 Redis 容器可能还在初始化。
"""
import logging

from sqlalchemy import Engine
from sqlmodel import Session, select
from tenacity import after_log, before_log, retry, stop_after_attempt, wait_fixed

from marketplace.core.db import engine
from marketplace.core.redis_client import RedisClient, get_redis_client

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

max_tries = 60 * 5  # 最多等待 5 分钟
wait_seconds = 1

_wait_policy = retry(
    stop=stop_after_attempt(max_tries),
    wait=wait_fixed(wait_seconds),
    before=before_log(logger, logging.INFO),
    after=after_log(logger, logging.WARN),
)


@_wait_policy
def wait_for_db(db_engine: Engine) -> None:
    try:
        with Session(db_engine) as session:
            session.exec(select(1))
    except Exception as e:
        logger.error(e)
        raise e


@_wait_policy
def wait_for_redis(redis_client: RedisClient) -> None:
    try:
        redis_client.ping()
    except Exception as e:
        logger.error(e)
        raise e


def main() -> None:
    logger.info("Waiting for database and Redis")
    wait_for_db(engine)
    wait_for_redis(get_redis_client())
    logger.info("Dependencies are ready")


if __name__ == "__main__":  # pragma: no cover
    main()
