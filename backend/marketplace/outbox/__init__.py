"""Outbox 事件解析与投递"""
from .dispatcher import (
    HandlerResult,
    Ok,
    OrderItemNotFound,
    OutboxDispatcher,
    PermanentError,
    RetryableError,
)
from .events import (
    OrderCompleted,
    OrderCompletedPayload,
    OutboxEvent,
    RecordDeleted,
    RecordDeletedPayload,
    UnknownEventType,
    parse_event,
)

__all__ = [
    "HandlerResult",
    "Ok",
    "OrderItemNotFound",
    "OutboxDispatcher",
    "PermanentError",
    "RetryableError",
    "OrderCompleted",
    "OrderCompletedPayload",
    "OutboxEvent",
    "RecordDeleted",
    "RecordDeletedPayload",
    "UnknownEventType",
    "parse_event",
]
