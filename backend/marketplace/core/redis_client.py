"""
Redis 客户端

提供 outbox 事件队列（Redis Streams）和分布式锁
"""

import logging

import redis

logger = logging.getLogger(__name__)

StreamMessages = list[tuple[str, list[tuple[str, dict[str, str]]]]]


class RedisClient:
    """Redis 客户端封装"""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: str | None = None,
    ):
        self.client = redis.Redis(
            host=host,
            port=port,
            db=db,
            password=password,
            decode_responses=True,
        )
        logger.info(f"Redis client initialized: {host}:{port}/{db}")

    def ping(self) -> bool:
        """
        测试连接

        prestart 依赖异常触发重试，这里不吞掉连接错误。
        """
        return bool(self.client.ping())

    # ========================================================================
    # 分布式锁
    # ========================================================================

    def acquire_lock(self, lock_key: str, lock_value: str, expire_seconds: int = 60) -> bool:
        """
        获取分布式锁

        Args:
            lock_key: 锁键
            lock_value: 锁值(用于释放时验证)
            expire_seconds: 锁过期时间(秒)

        Returns:
            是否获取成功
        """
        try:
            return bool(self.client.set(lock_key, lock_value, ex=expire_seconds, nx=True))
        except redis.RedisError as e:
            logger.error(f"Failed to acquire lock: {e}")
            return False

    def release_lock(self, lock_key: str, lock_value: str) -> bool:
        """释放分布式锁，锁值必须匹配"""
        # Lua 脚本保证原子性
        lua_script = """
        if redis.call("get", KEYS[1]) == ARGV[1] then
            return redis.call("del", KEYS[1])
        else
            return 0
        end
        """
        try:
            return self.client.eval(lua_script, 1, lock_key, lock_value) == 1
        except redis.RedisError as e:
            logger.error(f"Failed to release lock: {e}")
            return False

    # ========================================================================
    # Redis Streams (消息队列)
    # ========================================================================

    def xadd(self, stream_key: str, fields: dict[str, str], maxlen: int | None = None) -> str:
        """
        添加消息到 Stream

        入队失败直接抛出：调用方需要知道事件没有进入队列。
        """
        return self.client.xadd(stream_key, fields, maxlen=maxlen, approximate=True)

    def xgroup_create(self, stream_key: str, group_name: str, message_id: str = "0") -> bool:
        """创建消费者组（已存在视为成功）"""
        try:
            self.client.xgroup_create(stream_key, group_name, id=message_id, mkstream=True)
            return True
        except redis.ResponseError as e:
            if "BUSYGROUP" in str(e):
                return True
            logger.error(f"Redis xgroup_create failed: {e}")
            return False

    def xreadgroup(
        self,
        group_name: str,
        consumer_name: str,
        streams: dict[str, str],
        count: int | None = None,
        block: int | None = None,
    ) -> StreamMessages:
        """从消费者组读取消息"""
        try:
            return self.client.xreadgroup(group_name, consumer_name, streams, count=count, block=block)
        except redis.RedisError as e:
            logger.error(f"Redis xreadgroup failed: {e}")
            return []

    def xack(self, stream_key: str, group_name: str, *message_ids: str) -> int:
        """确认消息已处理"""
        try:
            return self.client.xack(stream_key, group_name, *message_ids)
        except redis.RedisError as e:
            logger.error(f"Redis xack failed: {e}")
            return 0

    def close(self) -> None:
        self.client.close()
        logger.info("Redis client closed")


# 全局 Redis 客户端实例
_redis_client: RedisClient | None = None


def get_redis_client() -> RedisClient:
    """获取全局 Redis 客户端实例，第一次调用时根据配置创建"""
    global _redis_client
    if _redis_client is None:
        from marketplace.core.config import settings

        _redis_client = RedisClient(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
            password=settings.REDIS_PASSWORD,
        )
    return _redis_client
