"""
用户模型模块

订单只通过 user_id 引用用户，认证与资料管理不在本服务内。
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, String
from sqlmodel import Field, SQLModel

from .base import new_id, utc_now


class User(SQLModel, table=True):
    """
    用户模型（订单归属）

    字段说明：
    - id: 主键（UUID）
    - email: 邮箱（唯一）
    - name: 显示名称
    - created_at: 创建时间
    """
    __tablename__ = "users"
    id: str = Field(
        default_factory=new_id,
        sa_column=Column(String(36), primary_key=True),
    )
    email: str = Field(
        sa_column=Column(String(255), unique=True, index=True, nullable=False)
    )
    name: str | None = Field(default=None, max_length=128)

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
