"""
基础模型模块

定义所有模型共用的工具函数。
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlmodel import SQLModel


def utc_now() -> datetime:
    """
    获取当前 UTC 时间

    Returns:
        当前 UTC 时区的日期时间对象
    """
    return datetime.now(timezone.utc)


def new_id() -> str:
    """生成 UUID 字符串主键"""
    return str(uuid4())


__all__ = ["SQLModel", "utc_now", "new_id"]
