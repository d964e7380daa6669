"""
数据库模型定义模块

模型按功能拆分：
- user.py: 用户（订单归属）
- product.py: 模板商品
- order.py: 订单和订单项
- outbox.py: Outbox 事件
"""
from sqlmodel import SQLModel

from .base import new_id, utc_now
from .order import ORDER_TRANSITIONS, Order, OrderItem
from .outbox import DEFAULT_MAX_ATTEMPTS, Outbox
from .product import Product
from .user import User

__all__ = [
    "SQLModel",
    "utc_now",
    "new_id",
    "User",
    "Product",
    "Order",
    "OrderItem",
    "ORDER_TRANSITIONS",
    "Outbox",
    "DEFAULT_MAX_ATTEMPTS",
]
