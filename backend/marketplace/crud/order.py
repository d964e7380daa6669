"""订单 CRUD 操作"""
from sqlmodel import Session, col, select

from marketplace.enums import OrderStatus, ProductType, SyncStatus
from marketplace.models import Order, OrderItem


def get_order(*, session: Session, order_id: str, for_update: bool = False) -> Order | None:
    """
    按 ID 查询订单

    for_update=True 时加行锁并用数据库中的最新值覆盖会话里已加载的对象，
    用于状态变更前的重新校验。
    """
    if not for_update:
        return session.get(Order, order_id)
    stmt = (
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return session.exec(stmt).first()


def get_order_by_number(*, session: Session, order_number: str) -> Order | None:
    return session.exec(select(Order).where(Order.order_number == order_number)).first()


def list_user_orders(
    *, session: Session, user_id: str, status: OrderStatus | None = None
) -> list[Order]:
    """按创建时间倒序列出用户的订单"""
    stmt = select(Order).where(Order.user_id == user_id)
    if status is not None:
        stmt = stmt.where(Order.status == status)
    return list(session.exec(stmt.order_by(col(Order.created_at).desc())).all())


def list_unsynced_items(*, session: Session, order_id: str) -> list[OrderItem]:
    """订单中尚未同步成功的 interactive 订单项"""
    stmt = (
        select(OrderItem)
        .where(OrderItem.order_id == order_id)
        .where(OrderItem.product_type == ProductType.interactive)
        .where(OrderItem.sync_status != SyncStatus.synced)
    )
    return list(session.exec(stmt).all())
