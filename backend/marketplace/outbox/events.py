"""
Outbox 事件类型

Outbox 行在投递前先解析成具体的事件对象（OrderCompleted / RecordDeleted），
OutboxDispatcher 按事件类型分发。新增事件类型需要：
1. 在 OutboxEventType 中加一个值
2. 在这里加一个 payload 模型和事件类，并注册到 _PARSERS
3. 在 OutboxDispatcher.handle 中处理它
"""
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from marketplace.enums import OutboxEventType, ProductType
from marketplace.models import Outbox


class UnknownEventType(Exception):
    """未知事件类型或无法解析的 payload，属于程序错误，不重试"""

    def __init__(self, event_type: str, detail: str | None = None) -> None:
        message = f"Unknown event type: {event_type}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.event_type = event_type


class OrderCompletedItem(BaseModel):
    order_item_id: str
    template_id: str
    template_type: ProductType = ProductType.interactive
    template_structure: dict[str, Any] = Field(default_factory=dict)


class OrderCompletedPayload(BaseModel):
    order_id: str | None = None
    user_id: str
    items: list[OrderCompletedItem]


class RecordDeletedPayload(BaseModel):
    record_id: str


@dataclass(frozen=True)
class OrderCompleted:
    event_id: str
    payload: OrderCompletedPayload


@dataclass(frozen=True)
class RecordDeleted:
    event_id: str
    payload: RecordDeletedPayload


OutboxEvent = OrderCompleted | RecordDeleted


def _parse_order_completed(outbox: Outbox) -> OrderCompleted:
    return OrderCompleted(
        event_id=outbox.id, payload=OrderCompletedPayload.model_validate(outbox.payload)
    )


def _parse_record_deleted(outbox: Outbox) -> RecordDeleted:
    return RecordDeleted(
        event_id=outbox.id, payload=RecordDeletedPayload.model_validate(outbox.payload)
    )


_PARSERS: dict[str, Callable[[Outbox], OutboxEvent]] = {
    OutboxEventType.order_completed.value: _parse_order_completed,
    OutboxEventType.record_deleted.value: _parse_record_deleted,
}


def parse_event(outbox: Outbox) -> OutboxEvent:
    """
    把 Outbox 行解析为事件对象

    Raises:
        UnknownEventType: 事件类型未注册，或 payload 不符合该类型的结构
    """
    parser = _PARSERS.get(outbox.event_type)
    if parser is None:
        raise UnknownEventType(outbox.event_type)
    try:
        return parser(outbox)
    except ValidationError as e:
        raise UnknownEventType(outbox.event_type, f"invalid payload: {e.error_count()} errors") from e
