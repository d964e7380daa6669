from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from marketplace.enums import OrderStatus, OutboxEventType, OutboxStatus
from marketplace.errors import InvalidOrderState
from marketplace.models import Order, Outbox, Product
from marketplace.outbox import OrderCompleted, RecordDeleted, UnknownEventType, parse_event

NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


def _order(status: OrderStatus) -> Order:
    return Order(order_number="ORD-2026-ABC", user_id="user-1", status=status)


@pytest.mark.parametrize(
    "current,target",
    [
        (OrderStatus.pending, OrderStatus.processing),
        (OrderStatus.pending, OrderStatus.completed),
        (OrderStatus.processing, OrderStatus.failed),
        (OrderStatus.completed, OrderStatus.refunded),
    ],
)
def test_allowed_transitions(current, target):
    order = _order(current)
    order.transition_to(target, now=NOW)
    assert order.status == target
    assert order.updated_at == NOW


@pytest.mark.parametrize(
    "current,target",
    [
        (OrderStatus.completed, OrderStatus.pending),
        (OrderStatus.failed, OrderStatus.completed),
        (OrderStatus.cancelled, OrderStatus.processing),
        (OrderStatus.refunded, OrderStatus.completed),
        (OrderStatus.pending, OrderStatus.refunded),
    ],
)
def test_rejected_transitions(current, target):
    order = _order(current)
    assert not order.can_transition_to(target)
    with pytest.raises(InvalidOrderState):
        order.transition_to(target, now=NOW)
    assert order.status == current


def test_effective_price_prefers_lower_sale_price():
    product = Product(name_ar="قالب", price=Decimal("40.00"), type="downloadable")
    assert product.effective_price == Decimal("40.00")
    product.sale_price = Decimal("25.00")
    assert product.effective_price == Decimal("25.00")
    product.sale_price = Decimal("45.00")
    assert product.effective_price == Decimal("40.00")


def test_record_failure_backs_off_exponentially():
    outbox = Outbox(event_type="order.completed", aggregate_type="Order", aggregate_id="o1", max_attempts=3)

    outbox.record_failure("boom", now=NOW, retry_base_seconds=60)
    assert outbox.status == OutboxStatus.pending
    assert outbox.attempts == 1
    assert outbox.next_retry_at == NOW + timedelta(seconds=120)
    assert outbox.retries_remaining == 2

    outbox.record_failure("boom", now=NOW, retry_base_seconds=60)
    assert outbox.next_retry_at == NOW + timedelta(seconds=240)

    outbox.record_failure("boom", now=NOW, retry_base_seconds=60)
    assert outbox.status == OutboxStatus.failed
    assert outbox.attempts == 3
    assert outbox.next_retry_at is None
    assert not outbox.can_retry
    assert outbox.has_failed_permanently


def test_permanent_failure_skips_retries():
    outbox = Outbox(event_type="order.completed", aggregate_type="Order", aggregate_id="o1")
    outbox.record_failure("bad request", now=NOW, retry_base_seconds=60, permanent=True)
    assert outbox.status == OutboxStatus.failed
    assert outbox.attempts == 1


def test_reset_for_retry_clears_state():
    outbox = Outbox(event_type="order.completed", aggregate_type="Order", aggregate_id="o1", max_attempts=1)
    outbox.record_failure("boom", now=NOW, retry_base_seconds=60)
    assert outbox.status == OutboxStatus.failed

    outbox.reset_for_retry(now=NOW)
    assert outbox.status == OutboxStatus.pending
    assert outbox.attempts == 0
    assert outbox.last_error is None


def test_parse_event_variants():
    completed = Outbox(
        event_type=OutboxEventType.order_completed.value,
        aggregate_type="Order",
        aggregate_id="o1",
        payload={
            "order_id": "o1",
            "user_id": "u1",
            "items": [
                {
                    "order_item_id": "i1",
                    "template_id": "p1",
                    "template_type": "interactive",
                    "template_structure": {"field1": "text"},
                }
            ],
        },
    )
    event = parse_event(completed)
    assert isinstance(event, OrderCompleted)
    assert event.event_id == completed.id
    assert event.payload.items[0].template_structure == {"field1": "text"}

    deleted = Outbox(
        event_type=OutboxEventType.record_deleted.value,
        aggregate_type="OrderItem",
        aggregate_id="i1",
        payload={"record_id": "rec_1"},
    )
    event = parse_event(deleted)
    assert isinstance(event, RecordDeleted)
    assert event.payload.record_id == "rec_1"


def test_parse_event_rejects_unknown_and_invalid():
    with pytest.raises(UnknownEventType):
        parse_event(Outbox(event_type="order.shipped", aggregate_type="Order", aggregate_id="o1"))

    with pytest.raises(UnknownEventType, match="invalid payload"):
        parse_event(
            Outbox(
                event_type=OutboxEventType.record_deleted.value,
                aggregate_type="OrderItem",
                aggregate_id="i1",
                payload={},
            )
        )
