"""
自定义异常模块

下单/支付相关的业务异常都继承自 AppError，由外层 Web 层统一映射为 HTTP 响应。
这些异常在任何数据库写入之前抛出，不会留下部分写入的订单。
"""
from __future__ import annotations


class AppError(Exception):
    """
    应用自定义异常基类

    - code: 业务错误码（用于前端区分不同错误）
    - message: 错误消息
    - status_code: 建议的 HTTP 状态码

    使用示例：
        raise AppError(code=400101, message="Cart is empty", status_code=400)
    """

    def __init__(self, *, code: int, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class EmptyCart(AppError):
    """购物车为空"""

    def __init__(self) -> None:
        super().__init__(code=400101, message="Cart is empty", status_code=400)


class InvalidPayment(AppError):
    """支付参数无效（如 payment_id 为空）"""

    def __init__(self, message: str = "Payment id is required") -> None:
        super().__init__(code=400102, message=message, status_code=400)


class ProductNotFound(AppError):
    """商品不存在或已下架"""

    def __init__(self, product_id: str) -> None:
        super().__init__(
            code=404101, message=f"Product not found: {product_id}", status_code=404
        )
        self.product_id = product_id


class InvalidOrderState(AppError):
    """订单当前状态不允许目标状态变更"""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            code=409101,
            message=f"Order cannot move from {current} to {target}",
            status_code=409,
        )
        self.current = current
        self.target = target
