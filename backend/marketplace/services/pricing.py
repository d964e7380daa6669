"""
订单金额计算

金额始终在服务端根据快照单价计算，不信任客户端传入的金额。
"""
from collections.abc import Callable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from marketplace.core.config import settings

_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal


TotalsPolicy = Callable[[Decimal], Totals]


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


def compute_totals(
    subtotal: Decimal, *, discount: Decimal = Decimal("0"), tax_rate: Decimal = Decimal("0")
) -> Totals:
    """
    计算订单金额

    折扣不超过小计，税基为折后金额。所有金额非负，保留两位小数。

    Args:
        subtotal: 小计（单价快照 × 数量之和）
        discount: 折扣金额
        tax_rate: 税率，如 Decimal("0.15")

    Returns:
        Totals，满足 total = subtotal - discount + tax

    Raises:
        ValueError: 金额或税率为负数时
    """
    if subtotal < 0 or discount < 0 or tax_rate < 0:
        raise ValueError("Amounts and tax rate must be non-negative")
    subtotal = _money(subtotal)
    discount = _money(min(discount, subtotal))
    tax = _money((subtotal - discount) * tax_rate)
    return Totals(
        subtotal=subtotal,
        discount=discount,
        tax=tax,
        total=subtotal - discount + tax,
    )


def flat_tax_policy(tax_rate: Decimal) -> TotalsPolicy:
    """无折扣、固定税率的金额策略"""

    def _policy(subtotal: Decimal) -> Totals:
        return compute_totals(subtotal, tax_rate=tax_rate)

    return _policy


def default_totals_policy(subtotal: Decimal) -> Totals:
    """使用配置中的 TAX_RATE"""
    return compute_totals(subtotal, tax_rate=settings.TAX_RATE)
