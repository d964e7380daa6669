"""
Outbox 事件投递

OutboxDispatcher 把 pending 的 Outbox 事件投递到 Firestore，并推进事件状态：

    pending → processing → completed
                         → pending（可重试错误，attempts < max_attempts，指数退避）
                         → failed（不可重试错误，或 attempts 达到上限）

并发控制：
- 领取事件使用 compare-and-swap：UPDATE ... WHERE status = 'pending'，
  影响行数为 0 说明已被其他 worker 领取，直接跳过
- 领取时写入租约 locked_until 和新的 claim_token，worker 崩溃后由 release_stale 释放
- 处理结果用 UPDATE ... WHERE status = 'processing' AND claim_token = ? 写回，
  领取已被回收或被其他 worker 重新领取时结果丢弃

幂等：投递是至少一次的，Firestore 的创建操作本身不幂等，
所以创建前检查订单项的 sync_status，已 synced 的订单项直接跳过。
"""
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlmodel import Session, col, select
from typing_extensions import assert_never

from marketplace.core.config import settings
from marketplace.crud import list_ready, list_unsynced_items
from marketplace.enums import OutboxEventType, OutboxStatus, ProductType, SyncStatus
from marketplace.models import OrderItem, Outbox, new_id, utc_now
from marketplace.outbox.events import (
    OrderCompleted,
    RecordDeleted,
    UnknownEventType,
    parse_event,
)
from marketplace.services.firestore_service import DocumentStore, PermanentStoreError

logger = logging.getLogger(__name__)


class OrderItemNotFound(Exception):
    """事件引用的订单项不存在"""


@dataclass(frozen=True)
class Ok:
    """处理成功"""


@dataclass(frozen=True)
class RetryableError:
    """临时错误，稍后重试"""
    message: str


@dataclass(frozen=True)
class PermanentError:
    """永久错误，不再重试"""
    message: str


HandlerResult = Ok | RetryableError | PermanentError


class OutboxDispatcher:
    """Outbox 事件投递器"""

    def __init__(
        self,
        *,
        session: Session,
        store: DocumentStore,
        clock: Callable[[], datetime] = utc_now,
        lease_seconds: int = settings.OUTBOX_LEASE_SECONDS,
        retry_base_seconds: int = settings.OUTBOX_RETRY_BASE_SECONDS,
    ) -> None:
        """
        Args:
            session: 数据库会话
            store: 外部文档存储（Firestore）
            clock: 当前时间来源
            lease_seconds: 领取事件后的处理租约（秒）
            retry_base_seconds: 重试退避基数（秒）
        """
        self.session = session
        self.store = store
        self.clock = clock
        self.lease_seconds = lease_seconds
        self.retry_base_seconds = retry_base_seconds
        # 本实例持有的领取凭证：outbox_id → claim_token
        self._claims: dict[str, str] = {}

    def claim(self, outbox_id: str) -> Outbox | None:
        """
        领取事件：pending → processing

        每次领取生成新的 claim_token，结果写回时以它判断该领取是否仍然有效。

        Returns:
            领取成功返回事件；已被其他 worker 领取或已处于终态时返回 None
        """
        now = self.clock()
        claim_token = new_id()
        result = self.session.exec(
            update(Outbox)
            .where(col(Outbox.id) == outbox_id)
            .where(col(Outbox.status) == OutboxStatus.pending)
            .values(
                status=OutboxStatus.processing,
                claim_token=claim_token,
                locked_until=now + timedelta(seconds=self.lease_seconds),
                updated_at=now,
            )
        )
        self.session.commit()
        if result.rowcount != 1:
            logger.info("Outbox event %s not claimable, skip", outbox_id)
            return None
        self._claims[outbox_id] = claim_token
        return self.session.get(Outbox, outbox_id)

    def process(self, outbox_id: str) -> OutboxStatus | None:
        """
        领取并处理一个事件

        Returns:
            处理后的事件状态；未领取到时返回 None
        """
        outbox = self.claim(outbox_id)
        if outbox is None:
            return None
        result = self.handle(outbox)
        return self._apply(outbox, result)

    def run_pending(self, limit: int = 100) -> dict[str, OutboxStatus | None]:
        """按创建时间顺序处理已到期的 pending 事件"""
        ready_ids = [event.id for event in list_ready(session=self.session, now=self.clock(), limit=limit)]
        return {outbox_id: self.process(outbox_id) for outbox_id in ready_ids}

    def handle(self, outbox: Outbox) -> HandlerResult:
        """
        执行事件对应的副作用

        不抛出异常，所有失败都转换为 RetryableError / PermanentError。
        """
        try:
            event = parse_event(outbox)
            if isinstance(event, OrderCompleted):
                self._handle_order_completed(event)
            elif isinstance(event, RecordDeleted):
                self._handle_record_deleted(event)
            else:
                assert_never(event)
        except (UnknownEventType, PermanentStoreError, OrderItemNotFound) as e:
            self.session.rollback()
            return PermanentError(str(e))
        except Exception as e:
            self.session.rollback()
            return RetryableError(f"{type(e).__name__}: {e}")
        return Ok()

    def _handle_order_completed(self, event: OrderCompleted) -> None:
        payload = event.payload
        for item in payload.items:
            if item.template_type != ProductType.interactive:
                continue
            order_item = self.session.get(OrderItem, item.order_item_id)
            if order_item is None:
                raise OrderItemNotFound(f"Order item not found: {item.order_item_id}")
            if not order_item.needs_sync:
                # 重复投递：该订单项已创建过 Firestore 记录
                logger.info(
                    "Order item %s already synced as %s, skip",
                    order_item.id,
                    order_item.firestore_record_id,
                )
                continue

            record_id = self.store.create_user_record(
                payload.user_id, item.template_id, item.template_structure
            )

            # 每个订单项单独提交，后续订单项失败时已同步的不会重复创建
            order_item.firestore_record_id = record_id
            order_item.sync_status = SyncStatus.synced
            order_item.sync_error = None
            order_item.updated_at = self.clock()
            self.session.add(order_item)
            self.session.commit()

    def _handle_record_deleted(self, event: RecordDeleted) -> None:
        self.store.delete_user_record(event.payload.record_id)

    def _apply(self, outbox: Outbox, result: HandlerResult) -> OutboxStatus:
        """根据处理结果推进事件状态并提交"""
        claim_token = self._claims.pop(outbox.id, None)
        self.session.refresh(outbox)
        outcome = Outbox(**outbox.model_dump())

        now = self.clock()
        if isinstance(result, Ok):
            outcome.mark_completed(now=now)
        elif isinstance(result, RetryableError):
            outcome.record_failure(
                result.message, now=now, retry_base_seconds=self.retry_base_seconds
            )
        elif isinstance(result, PermanentError):
            outcome.record_failure(
                result.message, now=now, retry_base_seconds=self.retry_base_seconds, permanent=True
            )
        else:
            assert_never(result)

        if claim_token is None or not self._write_outcome(outcome, claim_token):
            # 租约已过期并被回收（可能已被其他 worker 重新领取），结果以当前状态为准
            self.session.rollback()
            self.session.refresh(outbox)
            logger.warning(
                "Outbox event %s is no longer held by this claim (status=%s), result dropped",
                outbox.id,
                outbox.status,
            )
            return OutboxStatus(outbox.status)

        if outcome.status == OutboxStatus.failed:
            self._mark_items_failed(outcome)
        self.session.commit()
        self._log_outcome(outcome, result)
        return OutboxStatus(outcome.status)

    def _write_outcome(self, outcome: Outbox, claim_token: str | None) -> bool:
        """
        写回处理结果

        只有事件仍处于 processing 且领取凭证未变时才写入。

        Returns:
            是否写入成功
        """
        stmt = (
            update(Outbox)
            .where(col(Outbox.id) == outcome.id)
            .where(col(Outbox.status) == OutboxStatus.processing)
        )
        if claim_token is None:
            stmt = stmt.where(col(Outbox.claim_token).is_(None))
        else:
            stmt = stmt.where(col(Outbox.claim_token) == claim_token)
        result = self.session.exec(
            stmt.values(
                status=outcome.status,
                attempts=outcome.attempts,
                last_error=outcome.last_error,
                next_retry_at=outcome.next_retry_at,
                locked_until=outcome.locked_until,
                claim_token=outcome.claim_token,
                processed_at=outcome.processed_at,
                updated_at=outcome.updated_at,
            )
        )
        return result.rowcount == 1

    def release_stale(self) -> int:
        """
        回收租约已过期的 processing 事件

        worker 在处理中途崩溃时，事件会一直停在 processing。
        过期的事件按一次失败处理：回到 pending 等待重试，或达到上限后标记为 failed。

        Returns:
            回收的事件数
        """
        now = self.clock()
        stale = self.session.exec(
            select(Outbox)
            .where(Outbox.status == OutboxStatus.processing)
            .where(col(Outbox.locked_until) < now)
            .execution_options(populate_existing=True)
        ).all()
        released = 0
        for outbox in stale:
            outcome = Outbox(**outbox.model_dump())
            outcome.record_failure(
                "Processing lease expired", now=now, retry_base_seconds=self.retry_base_seconds
            )
            # 查询之后 worker 可能已写回结果
            if not self._write_outcome(outcome, outbox.claim_token):
                continue
            if outcome.status == OutboxStatus.failed:
                self._mark_items_failed(outcome)
            released += 1
            logger.warning(
                "Released stale outbox event event_id=%s event_type=%s attempts=%d status=%s",
                outcome.id,
                outcome.event_type,
                outcome.attempts,
                outcome.status,
            )
        self.session.commit()
        return released

    def _mark_items_failed(self, outbox: Outbox) -> None:
        """order.completed 事件最终失败时，把未同步的订单项标记为 failed"""
        if outbox.event_type != OutboxEventType.order_completed.value:
            return
        now = self.clock()
        for item in list_unsynced_items(session=self.session, order_id=outbox.aggregate_id):
            item.sync_status = SyncStatus.failed
            item.sync_error = outbox.last_error
            item.updated_at = now
            self.session.add(item)

    def _log_outcome(self, outbox: Outbox, result: HandlerResult) -> None:
        if isinstance(result, Ok):
            logger.info(
                "Outbox event processed successfully event_id=%s event_type=%s",
                outbox.id,
                outbox.event_type,
            )
            return
        logger.error(
            "Outbox event processing failed event_id=%s event_type=%s attempts=%d/%d status=%s error=%s",
            outbox.id,
            outbox.event_type,
            outbox.attempts,
            outbox.max_attempts,
            outbox.status,
            outbox.last_error,
        )
