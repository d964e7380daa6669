"""
购买服务

负责订单创建、支付完成、支付失败、取消和退款，是订单状态的唯一写入方。

支付完成时，订单状态变更和 Outbox 事件写入在同一个事务中提交：
要么两者都存在，要么都不存在。Firestore 记录不在这里同步创建，
由 OutboxDispatcher 在后台投递，支付流程不依赖 Firestore 的可用性。
"""
import logging
import secrets
from collections.abc import Callable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import update
from sqlmodel import Session, col

from marketplace.core.config import settings
from marketplace.crud import create_outbox_event, get_order
from marketplace.enums import OrderStatus, OutboxEventType, PaymentMethod, ProductType, SyncStatus
from marketplace.errors import EmptyCart, InvalidOrderState, InvalidPayment, ProductNotFound
from marketplace.models import Order, OrderItem, Outbox, Product, utc_now
from marketplace.schemas import CartItem
from marketplace.services.catalog import CatalogLookup, ProductSnapshot
from marketplace.services.pricing import TotalsPolicy, default_totals_policy

logger = logging.getLogger(__name__)

ORDER_AGGREGATE = "Order"


def generate_order_number(now: datetime) -> str:
    """订单号格式：ORD-<年份>-<12 位大写十六进制>"""
    return f"ORD-{now.year}-{secrets.token_hex(6).upper()}"


def build_order_completed_payload(order: Order) -> dict[str, Any] | None:
    """
    组装 order.completed 事件的数据快照

    只包含 interactive 订单项；没有 interactive 订单项时返回 None。

    Returns:
        {
            "order_id": str,
            "user_id": str,
            "items": [
                {"order_item_id", "template_id", "template_type", "template_structure"}
            ],
        }
    """
    items = [
        {
            "order_item_id": item.id,
            "template_id": item.product_id,
            "template_type": ProductType(item.product_type).value,
            "template_structure": item.template_snapshot or {},
        }
        for item in order.interactive_items
    ]
    if not items:
        return None
    return {"order_id": order.id, "user_id": order.user_id, "items": items}


class PurchaseService:
    """订单生命周期服务"""

    def __init__(
        self,
        *,
        session: Session,
        catalog: CatalogLookup,
        totals_policy: TotalsPolicy = default_totals_policy,
        clock: Callable[[], datetime] = utc_now,
        outbox_max_attempts: int = settings.OUTBOX_MAX_ATTEMPTS,
    ) -> None:
        """
        Args:
            session: 数据库会话
            catalog: 商品目录查询
            totals_policy: 金额策略（小计 → 折扣/税/总额）
            clock: 当前时间来源
            outbox_max_attempts: 新建 Outbox 事件的最大尝试次数
        """
        self.session = session
        self.catalog = catalog
        self.totals_policy = totals_policy
        self.clock = clock
        self.outbox_max_attempts = outbox_max_attempts

    def create_order(self, user_id: str, items: Sequence[CartItem]) -> Order:
        """
        创建待支付订单

        先解析全部商品，校验失败时不写入任何数据。
        单价、名称、类型和模板结构在此刻做快照。

        Args:
            user_id: 下单用户 ID
            items: 购物车商品

        Returns:
            status=pending 的订单（含订单项）

        Raises:
            EmptyCart: 购物车为空
            ProductNotFound: 任一商品不存在或已下架
        """
        if not items:
            raise EmptyCart()

        resolved: list[tuple[ProductSnapshot, int]] = []
        for cart_item in items:
            product = self.catalog.get_product(cart_item.product_id)
            if product is None:
                raise ProductNotFound(cart_item.product_id)
            resolved.append((product, cart_item.quantity))

        now = self.clock()
        order = Order(
            order_number=generate_order_number(now),
            user_id=user_id,
            status=OrderStatus.pending,
            created_at=now,
            updated_at=now,
        )
        order_items = []
        for product, quantity in resolved:
            interactive = product.product_type == ProductType.interactive
            order_items.append(
                OrderItem(
                    order_id=order.id,
                    product_id=product.id,
                    product_name=product.name,
                    price=product.price,
                    quantity=quantity,
                    product_type=product.product_type,
                    template_snapshot=dict(product.template_structure) if interactive else None,
                    sync_status=SyncStatus.pending if interactive else None,
                    created_at=now,
                    updated_at=now,
                )
            )

        totals = self.totals_policy(sum((item.line_total for item in order_items), Decimal("0")))
        order.subtotal = totals.subtotal
        order.discount = totals.discount
        order.tax = totals.tax
        order.total = totals.total
        try:
            self.session.add(order)
            for order_item in order_items:
                self.session.add(order_item)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(order)

        logger.info(
            "Order created: %s user_id=%s total=%s items_count=%d",
            order.order_number,
            user_id,
            order.total,
            len(resolved),
        )
        return order

    def complete_payment(
        self,
        order: Order,
        payment_id: str,
        payment_method: PaymentMethod | str,
        payment_metadata: dict[str, Any] | None = None,
    ) -> Order:
        """
        完成支付

        在一个事务中：更新订单为 completed、累加商品购买次数、
        为 interactive 订单项写入一条 order.completed 事件。
        任一步失败则整体回滚。

        Args:
            order: 待支付或处理中的订单
            payment_id: 支付网关交易 ID
            payment_method: 支付方式（stripe / paypal / wallet）
            payment_metadata: 支付网关附加数据

        Returns:
            已完成的订单

        Raises:
            InvalidPayment: payment_id 为空或支付方式不支持
            InvalidOrderState: 订单不是 pending / processing
        """
        if not payment_id or not payment_id.strip():
            raise InvalidPayment()
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise InvalidPayment(f"Unsupported payment method: {payment_method}") from None

        outbox_event: Outbox | None = None
        try:
            # 重复回调可能并发到达：加行锁后以数据库中的状态为准
            locked = get_order(session=self.session, order_id=order.id, for_update=True)
            if locked is None or locked.status not in (OrderStatus.pending, OrderStatus.processing):
                current = OrderStatus(locked.status).value if locked is not None else "missing"
                raise InvalidOrderState(current, OrderStatus.completed.value)
            order = locked

            now = self.clock()
            order.transition_to(OrderStatus.completed, now=now)
            order.payment_id = payment_id
            order.payment_method = method.value
            order.payment_details = {**(order.payment_details or {}), **(payment_metadata or {})}
            order.paid_at = now
            self.session.add(order)

            for item in order.items:
                self.session.exec(
                    update(Product)
                    .where(col(Product.id) == item.product_id)
                    .values(downloads_count=col(Product.downloads_count) + item.quantity)
                )

            payload = build_order_completed_payload(order)
            if payload is not None:
                outbox_event = create_outbox_event(
                    session=self.session,
                    event_type=OutboxEventType.order_completed,
                    aggregate_type=ORDER_AGGREGATE,
                    aggregate_id=order.id,
                    payload=payload,
                    max_attempts=self.outbox_max_attempts,
                )

            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(order)

        logger.info(
            "Payment completed for order: %s payment_id=%s payment_method=%s",
            order.order_number,
            payment_id,
            method.value,
        )
        if outbox_event is not None:
            logger.info(
                "Outbox event created for order: %s event_id=%s",
                order.order_number,
                outbox_event.id,
            )
        return order

    def mark_processing(self, order: Order) -> Order:
        """支付网关已受理，等待最终确认"""
        return self._transition(order, OrderStatus.processing)

    def handle_payment_failure(self, order: Order, reason: str) -> Order:
        """
        支付失败

        失败原因和时间合并写入 payment_details。
        """
        now = self.clock()
        order.transition_to(OrderStatus.failed, now=now)
        order.payment_details = {
            **(order.payment_details or {}),
            "failure_reason": reason,
            "failed_at": now.isoformat(),
        }
        self._commit(order)
        logger.warning("Payment failed for order: %s reason=%s", order.order_number, reason)
        return order

    def cancel_order(self, order: Order) -> Order:
        return self._transition(order, OrderStatus.cancelled)

    def refund_order(self, order: Order) -> Order:
        """
        退款

        已同步到 Firestore 的用户记录不会自动删除，
        需要时由调用方另行写入 record.deleted 事件。
        """
        return self._transition(order, OrderStatus.refunded)

    def _transition(self, order: Order, target: OrderStatus) -> Order:
        order.transition_to(target, now=self.clock())
        self._commit(order)
        logger.info("Order %s moved to %s", order.order_number, target.value)
        return order

    def _commit(self, order: Order) -> None:
        try:
            self.session.add(order)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(order)
