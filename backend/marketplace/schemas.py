"""
输入数据模型

由外层 Web 层校验后传入 PurchaseService。
"""
from pydantic import BaseModel, Field


class CartItem(BaseModel):
    """购物车中的一项"""
    product_id: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
