"""
模板商品模型模块

商品目录本身由管理后台维护，这里只定义下单时需要读取的字段。
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, Numeric, String
from sqlmodel import Field, SQLModel

from marketplace.enums import ProductType

from .base import new_id, utc_now


class Product(SQLModel, table=True):
    """
    模板商品模型

    字段说明：
    - id: 主键（UUID）
    - name_ar / name_en: 阿拉伯语 / 英语名称
    - price: 标价
    - sale_price: 促销价（可选，低于标价时生效）
    - type: 模板类型（downloadable / interactive）
    - template_structure: 交互式模板的字段结构（JSON），同步到 Firestore
    - is_active: 是否上架（下架商品不可购买）
    - downloads_count: 购买次数
    """
    __tablename__ = "products"
    id: str = Field(
        default_factory=new_id,
        sa_column=Column(String(36), primary_key=True),
    )
    name_ar: str = Field(max_length=255)
    name_en: str | None = Field(default=None, max_length=255)

    price: Decimal = Field(
        default=Decimal("0.00"),
        sa_column=Column(Numeric(10, 2), nullable=False),
    )
    sale_price: Decimal | None = Field(
        default=None, sa_column=Column(Numeric(10, 2), nullable=True)
    )

    type: ProductType = Field(sa_column=Column(String(16), nullable=False))
    template_structure: dict | None = Field(default=None, sa_column=Column(JSON))

    is_active: bool = Field(
        default=True, sa_column=Column(Boolean, nullable=False, default=True)
    )
    downloads_count: int = Field(
        default=0, sa_column=Column(Integer, nullable=False, default=0)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    @property
    def effective_price(self) -> Decimal:
        """实际售价：促销价低于标价时取促销价"""
        if self.sale_price is not None and self.sale_price < self.price:
            return self.sale_price
        return self.price
