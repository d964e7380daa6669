"""
商品目录查询

PurchaseService 通过 CatalogLookup 协议读取商品当前的价格、类型和模板结构，
默认实现直接查询 products 表。
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

from sqlmodel import Session

from marketplace.enums import ProductType
from marketplace.models import Product


@dataclass(frozen=True)
class ProductSnapshot:
    """下单时刻的商品信息快照"""
    id: str
    name: str
    price: Decimal
    product_type: ProductType
    template_structure: dict[str, Any] = field(default_factory=dict)


class CatalogLookup(Protocol):
    def get_product(self, product_id: str) -> ProductSnapshot | None:
        """返回可购买的商品快照，不存在或已下架时返回 None"""
        ...


class SqlCatalog:
    """基于 products 表的目录查询"""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get_product(self, product_id: str) -> ProductSnapshot | None:
        product = self.session.get(Product, product_id)
        if product is None or not product.is_active:
            return None
        return ProductSnapshot(
            id=product.id,
            name=product.name_ar or product.name_en or "",
            price=product.effective_price,
            product_type=ProductType(product.type),
            template_structure=product.template_structure or {},
        )
