from __future__ import annotations

from decimal import Decimal

import pytest
from sqlmodel import Session, select

from marketplace.enums import OrderStatus, OutboxEventType, OutboxStatus, ProductType, SyncStatus
from marketplace.errors import EmptyCart, InvalidOrderState, InvalidPayment, ProductNotFound
from marketplace.models import Order, OrderItem, Outbox, Product
from marketplace.schemas import CartItem
from marketplace.services.catalog import SqlCatalog
from marketplace.services.pricing import compute_totals, flat_tax_policy
from marketplace.services.purchase_service import PurchaseService

STRUCTURE = {"field1": "text", "field2": "textarea"}


def _outbox_rows(db: Session, order_id: str) -> list[Outbox]:
    return list(db.exec(select(Outbox).where(Outbox.aggregate_id == order_id)).all())


def test_create_order_snapshots_items(purchase_service, user, make_product):
    interactive = make_product(
        product_type=ProductType.interactive, price="50.00", template_structure=STRUCTURE
    )
    downloadable = make_product(product_type=ProductType.downloadable, price="30.00")

    order = purchase_service.create_order(
        user.id, [CartItem(product_id=interactive.id), CartItem(product_id=downloadable.id)]
    )

    assert order.status == OrderStatus.pending
    assert order.subtotal == Decimal("80.00")
    assert order.total == Decimal("80.00")
    assert order.order_number.startswith("ORD-2026-")
    assert len(order.items) == 2

    by_type = {item.product_type: item for item in order.items}
    assert by_type[ProductType.interactive].sync_status == SyncStatus.pending
    assert by_type[ProductType.interactive].template_snapshot == STRUCTURE
    assert by_type[ProductType.downloadable].sync_status is None
    assert by_type[ProductType.downloadable].firestore_record_id is None


def test_create_order_empty_cart(purchase_service, db, user):
    with pytest.raises(EmptyCart):
        purchase_service.create_order(user.id, [])
    assert db.exec(select(Order)).all() == []


def test_create_order_unknown_product_writes_nothing(purchase_service, db, user, make_product):
    product = make_product(product_type=ProductType.downloadable, price="10.00")
    with pytest.raises(ProductNotFound) as exc_info:
        purchase_service.create_order(
            user.id, [CartItem(product_id=product.id), CartItem(product_id="missing")]
        )
    assert exc_info.value.product_id == "missing"
    assert exc_info.value.status_code == 404
    assert db.exec(select(Order)).all() == []
    assert db.exec(select(OrderItem)).all() == []


def test_create_order_inactive_product(purchase_service, user, make_product):
    product = make_product(product_type=ProductType.downloadable, price="10.00", is_active=False)
    with pytest.raises(ProductNotFound):
        purchase_service.create_order(user.id, [CartItem(product_id=product.id)])


def test_create_order_uses_sale_price_and_quantity(purchase_service, user, make_product):
    product = make_product(product_type=ProductType.downloadable, price="40.00", sale_price="25.00")
    order = purchase_service.create_order(user.id, [CartItem(product_id=product.id, quantity=3)])
    assert order.items[0].price == Decimal("25.00")
    assert order.items[0].quantity == 3
    assert order.total == Decimal("75.00")


def test_create_order_with_tax_policy(db, clock, user, make_product):
    product = make_product(product_type=ProductType.downloadable, price="80.00")
    service = PurchaseService(
        session=db, catalog=SqlCatalog(db), totals_policy=flat_tax_policy(Decimal("0.15")), clock=clock
    )
    order = service.create_order(user.id, [CartItem(product_id=product.id)])
    assert order.subtotal == Decimal("80.00")
    assert order.tax == Decimal("12.00")
    assert order.total == Decimal("92.00")


def test_compute_totals_caps_discount():
    totals = compute_totals(Decimal("20"), discount=Decimal("50"), tax_rate=Decimal("0.1"))
    assert totals.discount == Decimal("20.00")
    assert totals.tax == Decimal("0.00")
    assert totals.total == Decimal("0.00")

    with pytest.raises(ValueError):
        compute_totals(Decimal("-1"))


def test_complete_payment_creates_single_outbox_event(purchase_service, db, user, make_product, clock):
    interactive = make_product(
        product_type=ProductType.interactive, price="50.00", template_structure=STRUCTURE
    )
    downloadable = make_product(product_type=ProductType.downloadable, price="30.00")
    order = purchase_service.create_order(
        user.id, [CartItem(product_id=interactive.id), CartItem(product_id=downloadable.id)]
    )

    order = purchase_service.complete_payment(order, "payment_123", "stripe", {"charge_id": "ch_123"})

    assert order.status == OrderStatus.completed
    assert order.payment_id == "payment_123"
    assert order.payment_method == "stripe"
    assert order.payment_details == {"charge_id": "ch_123"}
    assert order.paid_at is not None
    assert order.is_paid

    events = _outbox_rows(db, order.id)
    assert len(events) == 1
    event = events[0]
    assert event.event_type == OutboxEventType.order_completed.value
    assert event.aggregate_type == "Order"
    assert event.status == OutboxStatus.pending
    assert event.attempts == 0
    assert event.max_attempts == 3

    interactive_item = next(i for i in order.items if i.product_type == ProductType.interactive)
    assert event.payload == {
        "order_id": order.id,
        "user_id": user.id,
        "items": [
            {
                "order_item_id": interactive_item.id,
                "template_id": interactive.id,
                "template_type": "interactive",
                "template_structure": STRUCTURE,
            }
        ],
    }


def test_complete_payment_downloadable_only_has_no_outbox(purchase_service, db, user, make_product):
    product = make_product(product_type=ProductType.downloadable, price="30.00")
    order = purchase_service.create_order(user.id, [CartItem(product_id=product.id)])

    order = purchase_service.complete_payment(order, "payment_456", "stripe")

    assert order.status == OrderStatus.completed
    assert _outbox_rows(db, order.id) == []


def test_complete_payment_increments_downloads(purchase_service, db, user, make_product):
    product = make_product(product_type=ProductType.downloadable, price="30.00")
    order = purchase_service.create_order(user.id, [CartItem(product_id=product.id, quantity=2)])
    purchase_service.complete_payment(order, "payment_789", "paypal")
    db.refresh(product)
    assert product.downloads_count == 2


def test_complete_payment_is_atomic(purchase_service, db, engine, user, make_product, monkeypatch):
    product = make_product(
        product_type=ProductType.interactive, price="50.00", template_structure=STRUCTURE
    )
    order = purchase_service.create_order(user.id, [CartItem(product_id=product.id)])

    def _boom(**kwargs):
        raise RuntimeError("crash between order update and outbox insert")

    monkeypatch.setattr("marketplace.services.purchase_service.create_outbox_event", _boom)

    with pytest.raises(RuntimeError):
        purchase_service.complete_payment(order, "payment_123", "stripe")

    with Session(engine) as other:
        stored = other.get(Order, order.id)
        assert stored is not None
        assert stored.status == OrderStatus.pending
        assert stored.payment_id is None
        assert stored.paid_at is None
        assert other.get(Product, product.id).downloads_count == 0
    assert _outbox_rows(db, order.id) == []


def test_complete_payment_twice_is_rejected(purchase_service, db, user, make_product):
    product = make_product(
        product_type=ProductType.interactive, price="50.00", template_structure=STRUCTURE
    )
    order = purchase_service.create_order(user.id, [CartItem(product_id=product.id)])
    purchase_service.complete_payment(order, "payment_123", "stripe")

    with pytest.raises(InvalidOrderState) as exc_info:
        purchase_service.complete_payment(order, "payment_999", "stripe")

    assert exc_info.value.current == "completed"
    assert len(_outbox_rows(db, order.id)) == 1
    assert order.payment_id == "payment_123"


def test_complete_payment_requires_payment_id(purchase_service, user, make_product):
    product = make_product(product_type=ProductType.downloadable, price="30.00")
    order = purchase_service.create_order(user.id, [CartItem(product_id=product.id)])
    with pytest.raises(InvalidPayment):
        purchase_service.complete_payment(order, "  ", "stripe")
    assert order.status == OrderStatus.pending


def test_complete_payment_from_processing(purchase_service, user, make_product):
    product = make_product(product_type=ProductType.downloadable, price="30.00")
    order = purchase_service.create_order(user.id, [CartItem(product_id=product.id)])
    order = purchase_service.mark_processing(order)
    assert order.status == OrderStatus.processing

    order = purchase_service.complete_payment(order, "payment_123", "wallet")
    assert order.status == OrderStatus.completed


def test_failed_order_cannot_be_paid(purchase_service, user, make_product):
    product = make_product(product_type=ProductType.downloadable, price="30.00")
    order = purchase_service.create_order(user.id, [CartItem(product_id=product.id)])

    order = purchase_service.handle_payment_failure(order, "card_declined")
    assert order.status == OrderStatus.failed
    assert order.payment_details["failure_reason"] == "card_declined"
    assert "failed_at" in order.payment_details

    with pytest.raises(InvalidOrderState):
        purchase_service.complete_payment(order, "payment_123", "stripe")


def test_cancel_and_refund_transitions(purchase_service, user, make_product):
    product = make_product(product_type=ProductType.downloadable, price="30.00")

    cancelled = purchase_service.cancel_order(
        purchase_service.create_order(user.id, [CartItem(product_id=product.id)])
    )
    assert cancelled.status == OrderStatus.cancelled
    with pytest.raises(InvalidOrderState):
        purchase_service.refund_order(cancelled)

    paid = purchase_service.create_order(user.id, [CartItem(product_id=product.id)])
    with pytest.raises(InvalidOrderState):
        purchase_service.refund_order(paid)
    paid = purchase_service.complete_payment(paid, "payment_123", "stripe")
    refunded = purchase_service.refund_order(paid)
    assert refunded.status == OrderStatus.refunded
    with pytest.raises(InvalidOrderState):
        purchase_service.cancel_order(refunded)


def test_price_snapshot_survives_catalog_changes(purchase_service, db, user, make_product):
    product = make_product(
        product_type=ProductType.interactive, price="50.00", template_structure=STRUCTURE
    )
    order = purchase_service.create_order(user.id, [CartItem(product_id=product.id)])

    product.price = Decimal("99.00")
    product.template_structure = {"changed": "text"}
    db.add(product)
    db.commit()

    db.refresh(order)
    item = order.items[0]
    db.refresh(item)
    assert item.price == Decimal("50.00")
    assert order.total == Decimal("50.00")

    purchase_service.complete_payment(order, "payment_123", "stripe")
    event = _outbox_rows(db, order.id)[0]
    assert event.payload["items"][0]["template_structure"] == STRUCTURE


def test_complete_payment_rejects_unknown_method(purchase_service, user, make_product):
    product = make_product(product_type=ProductType.downloadable, price="30.00")
    order = purchase_service.create_order(user.id, [CartItem(product_id=product.id)])
    with pytest.raises(InvalidPayment, match="Unsupported payment method"):
        purchase_service.complete_payment(order, "payment_123", "bitcoin")
    assert order.status == OrderStatus.pending


def test_duplicate_completion_from_two_sessions(purchase_service, db, engine, clock, user, make_product):
    product = make_product(
        product_type=ProductType.interactive, price="50.00", template_structure=STRUCTURE
    )
    order = purchase_service.create_order(user.id, [CartItem(product_id=product.id)])

    # A second worker loads the same pending order before the first one commits.
    with Session(engine) as other_session:
        other_order = other_session.get(Order, order.id)
        other_service = PurchaseService(
            session=other_session, catalog=SqlCatalog(other_session), clock=clock
        )

        purchase_service.complete_payment(order, "payment_A", "stripe")
        with pytest.raises(InvalidOrderState) as exc_info:
            other_service.complete_payment(other_order, "payment_B", "stripe")
        assert exc_info.value.current == "completed"

    assert len(_outbox_rows(db, order.id)) == 1
    db.refresh(product)
    assert product.downloads_count == 1
    db.refresh(order)
    assert order.payment_id == "payment_A"


def test_complete_payment_merges_payment_details(purchase_service, db, user, make_product):
    product = make_product(product_type=ProductType.downloadable, price="30.00")
    order = purchase_service.create_order(user.id, [CartItem(product_id=product.id)])
    order.payment_details = {"checkout_session": "cs_1"}
    db.add(order)
    db.commit()

    order = purchase_service.complete_payment(order, "payment_123", "stripe", {"charge_id": "ch_1"})

    assert order.payment_details == {"checkout_session": "cs_1", "charge_id": "ch_1"}
