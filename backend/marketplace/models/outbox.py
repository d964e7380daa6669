"""
Outbox 模型模块

事务性 Outbox：事件与业务状态变更在同一个数据库事务中写入，
再由后台 worker 异步投递到 Firestore，避免"已支付但未开通"的双写不一致。

状态流转：pending → processing → completed / pending（重试）/ failed
终态的事件不删除，保留用于审计和人工补偿。
"""
from datetime import datetime, timedelta

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlmodel import Field, SQLModel

from marketplace.enums import OutboxStatus

from .base import new_id, utc_now

DEFAULT_MAX_ATTEMPTS = 5


class Outbox(SQLModel, table=True):
    """
    Outbox 事件模型

    字段说明：
    - id: 主键（UUID）
    - event_type: 事件类型（order.completed / record.deleted）
    - aggregate_type: 聚合类型（如 "Order"）
    - aggregate_id: 聚合 ID（如订单 ID）
    - payload: 写入时的数据快照（JSON），投递时不再重新查询
    - status: 处理状态
    - attempts: 已尝试次数
    - max_attempts: 最大尝试次数
    - last_error: 最后一次失败原因
    - next_retry_at: 下次可重试时间（指数退避）
    - locked_until: 处理租约到期时间，worker 崩溃后由回收任务释放
    - claim_token: 当前领取凭证，每次领取重新生成；结果只在凭证仍匹配时写入
    - processed_at: 处理成功时间
    """
    __tablename__ = "outbox"
    __table_args__ = (
        Index("outbox_retry_queue_index", "status", "next_retry_at"),
        Index("outbox_aggregate_index", "aggregate_type", "aggregate_id"),
        Index("outbox_retry_attempts_index", "status", "attempts"),
    )

    id: str = Field(
        default_factory=new_id,
        sa_column=Column(String(36), primary_key=True),
    )
    event_type: str = Field(sa_column=Column(String(100), index=True, nullable=False))
    aggregate_type: str = Field(sa_column=Column(String(50), nullable=False))
    aggregate_id: str = Field(sa_column=Column(String(36), nullable=False))
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    status: OutboxStatus = Field(
        default=OutboxStatus.pending,
        sa_column=Column(String(16), index=True, nullable=False),
    )
    attempts: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    max_attempts: int = Field(
        default=DEFAULT_MAX_ATTEMPTS,
        sa_column=Column(Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS),
    )
    last_error: str | None = Field(default=None, sa_column=Column(Text))

    next_retry_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    locked_until: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    claim_token: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    processed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), index=True, nullable=True)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    @property
    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts

    @property
    def retries_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    @property
    def has_failed_permanently(self) -> bool:
        return self.status == OutboxStatus.failed

    def mark_completed(self, *, now: datetime) -> None:
        self.status = OutboxStatus.completed
        self.processed_at = now
        self.last_error = None
        self.locked_until = None
        self.claim_token = None
        self.updated_at = now

    def record_failure(
        self, error: str, *, now: datetime, retry_base_seconds: int, permanent: bool = False
    ) -> None:
        """
        记录一次失败的处理尝试

        attempts 加一；未达到上限且不是永久错误时回到 pending，
        并按 base * 2^attempts 秒设置下次重试时间，否则标记为 failed。

        Args:
            error: 失败原因
            now: 当前时间
            retry_base_seconds: 退避基数（秒）
            permanent: 是否为不可重试的错误
        """
        self.attempts += 1
        self.last_error = error
        self.locked_until = None
        self.claim_token = None
        self.updated_at = now
        if permanent or not self.can_retry:
            self.status = OutboxStatus.failed
            self.next_retry_at = None
            return
        self.status = OutboxStatus.pending
        self.next_retry_at = now + timedelta(seconds=retry_base_seconds * 2**self.attempts)

    def reset_for_retry(self, *, now: datetime) -> None:
        """人工补偿：清零尝试次数，重新进入队列"""
        self.status = OutboxStatus.pending
        self.attempts = 0
        self.last_error = None
        self.next_retry_at = None
        self.locked_until = None
        self.claim_token = None
        self.updated_at = now
