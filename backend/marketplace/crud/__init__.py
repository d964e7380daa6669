"""CRUD 操作模块"""
from .order import get_order, get_order_by_number, list_unsynced_items, list_user_orders
from .outbox import (
    create_event as create_outbox_event,
)
from .outbox import (
    dispatch_record_deleted,
    list_failed,
    list_for_aggregate,
    list_ready,
    reset_for_retry,
)

__all__ = [
    "get_order",
    "get_order_by_number",
    "list_user_orders",
    "list_unsynced_items",
    "create_outbox_event",
    "dispatch_record_deleted",
    "list_failed",
    "list_for_aggregate",
    "list_ready",
    "reset_for_retry",
]
