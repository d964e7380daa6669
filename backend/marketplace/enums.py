"""
枚举类型定义模块

所有枚举都继承自 str 和 Enum，既可以直接存入 String 列，又具有枚举的特性。
"""
from enum import Enum


class OrderStatus(str, Enum):
    """
    订单状态枚举

    - pending: 已下单，待支付
    - processing: 支付网关已受理，等待确认
    - completed: 已支付
    - failed: 支付失败
    - cancelled: 已取消
    - refunded: 已退款
    """
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"
    refunded = "refunded"


class ProductType(str, Enum):
    """
    模板类型枚举

    - downloadable: 静态文件，购买后直接下载
    - interactive: 交互式模板，购买后在 Firestore 中为用户创建记录
    """
    downloadable = "downloadable"
    interactive = "interactive"


class SyncStatus(str, Enum):
    """订单项与 Firestore 的同步状态（仅 interactive 订单项有意义）"""
    pending = "pending"
    synced = "synced"
    failed = "failed"


class OutboxStatus(str, Enum):
    """
    Outbox 事件状态枚举

    pending → processing → completed / pending（重试）/ failed
    """
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class OutboxEventType(str, Enum):
    """Outbox 事件类型"""
    order_completed = "order.completed"
    record_deleted = "record.deleted"


class PaymentMethod(str, Enum):
    """支付方式"""
    stripe = "stripe"
    paypal = "paypal"
    wallet = "wallet"
