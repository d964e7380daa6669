"""Outbox CRUD 操作"""
from datetime import datetime
from typing import Any

from sqlmodel import Session, col, or_, select

from marketplace.enums import OutboxEventType, OutboxStatus
from marketplace.models import DEFAULT_MAX_ATTEMPTS, Outbox, utc_now


def create_event(
    *,
    session: Session,
    event_type: OutboxEventType | str,
    aggregate_type: str,
    aggregate_id: str,
    payload: dict[str, Any],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Outbox:
    """
    写入一条 pending 事件

    不提交事务：事件必须和调用方的业务变更在同一个事务中提交。
    """
    event = Outbox(
        event_type=event_type.value if isinstance(event_type, OutboxEventType) else event_type,
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        payload=payload,
        status=OutboxStatus.pending,
        attempts=0,
        max_attempts=max_attempts,
    )
    session.add(event)
    return event


def list_ready(*, session: Session, now: datetime, limit: int = 100) -> list[Outbox]:
    """可以投递的事件：pending 且已到重试时间，最早创建的优先"""
    stmt = (
        select(Outbox)
        .where(Outbox.status == OutboxStatus.pending)
        .where(or_(col(Outbox.next_retry_at).is_(None), col(Outbox.next_retry_at) <= now))
        .order_by(col(Outbox.created_at).asc())
        .limit(limit)
    )
    return list(session.exec(stmt).all())


def list_failed(*, session: Session, limit: int = 100) -> list[Outbox]:
    """已永久失败、等待人工处理的事件"""
    stmt = (
        select(Outbox)
        .where(Outbox.status == OutboxStatus.failed)
        .order_by(col(Outbox.updated_at).desc())
        .limit(limit)
    )
    return list(session.exec(stmt).all())


def list_for_aggregate(
    *, session: Session, aggregate_type: str, aggregate_id: str
) -> list[Outbox]:
    stmt = (
        select(Outbox)
        .where(Outbox.aggregate_type == aggregate_type)
        .where(Outbox.aggregate_id == aggregate_id)
        .order_by(col(Outbox.created_at).asc())
    )
    return list(session.exec(stmt).all())


def reset_for_retry(*, session: Session, event: Outbox) -> Outbox:
    """把 failed 事件重新放回队列"""
    event.reset_for_retry(now=utc_now())
    session.add(event)
    session.commit()
    session.refresh(event)
    return event


def dispatch_record_deleted(
    *,
    session: Session,
    record_id: str,
    aggregate_id: str,
    aggregate_type: str = "OrderItem",
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Outbox:
    """写入删除 Firestore 用户记录的事件并提交"""
    event = create_event(
        session=session,
        event_type=OutboxEventType.record_deleted,
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        payload={"record_id": record_id},
        max_attempts=max_attempts,
    )
    session.commit()
    session.refresh(event)
    return event
