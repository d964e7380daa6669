"""
订单模型模块

定义订单（Order）和订单项（OrderItem）。

订单是财务记录，只做状态变更，不做物理删除。
订单项保存下单时的商品名称、类型和单价快照，之后目录调价不影响已下单的订单项。
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlmodel import Field, Relationship, SQLModel

from marketplace.enums import OrderStatus, ProductType, SyncStatus
from marketplace.errors import InvalidOrderState

from .base import new_id, utc_now

# 允许的订单状态变更；未列出的状态为终态
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.pending: frozenset(
        {
            OrderStatus.processing,
            OrderStatus.completed,
            OrderStatus.failed,
            OrderStatus.cancelled,
        }
    ),
    OrderStatus.processing: frozenset(
        {OrderStatus.completed, OrderStatus.failed, OrderStatus.cancelled}
    ),
    OrderStatus.completed: frozenset({OrderStatus.refunded}),
}


class Order(SQLModel, table=True):
    """
    订单模型

    字段说明：
    - id: 主键（UUID）
    - order_number: 可读订单号（唯一），格式 ORD-<年份>-<12 位十六进制>
    - user_id: 下单用户 ID（外键）
    - status: 订单状态
    - subtotal / discount / tax / total: 金额，total = subtotal - discount + tax
    - payment_method: 支付方式（stripe / paypal / wallet）
    - payment_id: 支付网关返回的交易 ID（支付前为空）
    - payment_details: 支付网关返回的附加数据、失败原因等（JSON）
    - paid_at: 支付时间
    """
    __tablename__ = "orders"
    id: str = Field(
        default_factory=new_id,
        sa_column=Column(String(36), primary_key=True),
    )
    order_number: str = Field(
        sa_column=Column(String(32), unique=True, index=True, nullable=False)
    )
    user_id: str = Field(
        sa_column=Column(
            String(36), ForeignKey("users.id", ondelete="RESTRICT"), index=True, nullable=False
        )
    )

    status: OrderStatus = Field(
        sa_column=Column(String(16), index=True, nullable=False)
    )

    subtotal: Decimal = Field(
        default=Decimal("0.00"), sa_column=Column(Numeric(10, 2), nullable=False)
    )
    discount: Decimal = Field(
        default=Decimal("0.00"), sa_column=Column(Numeric(10, 2), nullable=False)
    )
    tax: Decimal = Field(
        default=Decimal("0.00"), sa_column=Column(Numeric(10, 2), nullable=False)
    )
    total: Decimal = Field(
        default=Decimal("0.00"), sa_column=Column(Numeric(10, 2), nullable=False)
    )

    payment_method: str | None = Field(default=None, max_length=32)
    payment_id: str | None = Field(default=None, max_length=128)
    payment_details: dict | None = Field(default=None, sa_column=Column(JSON))
    paid_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    items: list["OrderItem"] = Relationship(back_populates="order")

    def can_transition_to(self, target: OrderStatus) -> bool:
        allowed = ORDER_TRANSITIONS.get(OrderStatus(self.status), frozenset())
        return target in allowed

    def transition_to(self, target: OrderStatus, *, now: datetime) -> None:
        """
        变更订单状态

        Args:
            target: 目标状态
            now: 当前时间（写入 updated_at）

        Raises:
            InvalidOrderState: 当前状态不允许变更到目标状态时
        """
        if not self.can_transition_to(target):
            raise InvalidOrderState(OrderStatus(self.status).value, target.value)
        self.status = target
        self.updated_at = now

    @property
    def is_paid(self) -> bool:
        return self.status == OrderStatus.completed and self.paid_at is not None

    @property
    def interactive_items(self) -> list["OrderItem"]:
        return [item for item in self.items if item.product_type == ProductType.interactive]


class OrderItem(SQLModel, table=True):
    """
    订单项模型

    字段说明：
    - id: 主键（UUID）
    - order_id: 所属订单（外键）
    - product_id: 模板商品 ID（外键）
    - product_name: 下单时的商品名称快照
    - price: 下单时的单价快照
    - quantity: 数量
    - product_type: 下单时的模板类型快照
    - template_snapshot: 下单时的模板结构快照（仅 interactive）
    - firestore_record_id: Firestore 用户记录 ID（仅 interactive，同步成功后写入）
    - sync_status: Firestore 同步状态（仅 interactive，downloadable 为空）
    - sync_error: 最后一次同步失败原因
    """
    __tablename__ = "order_items"
    id: str = Field(
        default_factory=new_id,
        sa_column=Column(String(36), primary_key=True),
    )
    order_id: str = Field(
        sa_column=Column(
            String(36), ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False
        )
    )
    product_id: str = Field(
        sa_column=Column(
            String(36), ForeignKey("products.id", ondelete="RESTRICT"), index=True, nullable=False
        )
    )

    product_name: str = Field(max_length=255)
    price: Decimal = Field(
        default=Decimal("0.00"), sa_column=Column(Numeric(10, 2), nullable=False)
    )
    quantity: int = Field(default=1, sa_column=Column(Integer, nullable=False, default=1))
    product_type: ProductType = Field(sa_column=Column(String(16), nullable=False))
    template_snapshot: dict | None = Field(default=None, sa_column=Column(JSON))

    firestore_record_id: str | None = Field(default=None, max_length=128)
    sync_status: SyncStatus | None = Field(
        default=None, sa_column=Column(String(16), index=True, nullable=True)
    )
    sync_error: str | None = Field(default=None, sa_column=Column(Text))

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    order: Order | None = Relationship(back_populates="items")

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity

    @property
    def is_synced(self) -> bool:
        return self.sync_status == SyncStatus.synced

    @property
    def needs_sync(self) -> bool:
        """interactive 且尚未同步"""
        return self.product_type == ProductType.interactive and not self.is_synced
