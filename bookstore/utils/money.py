"""金额计算工具

所有金额统一使用 Decimal，禁止使用 float。
展示金额使用银行家舍入（ROUND_HALF_EVEN），落库金额使用四舍五入（ROUND_HALF_UP）。
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0")

PROMOTION_PERCENTAGE = "percentage"
PROMOTION_FIXED = "fixed"


def to_decimal(value: Any) -> Decimal:
    """转换为 Decimal，float 先转字符串避免二进制误差"""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid monetary value: {value!r}") from e


def quantize_display(value: Any) -> Decimal:
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_EVEN)


def quantize_persist(value: Any) -> Decimal:
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    amount: Decimal
    currency: str = "VND"

    def __post_init__(self):
        object.__setattr__(self, "amount", to_decimal(self.amount))

    def _check(self, other: "Money"):
        if other.currency != self.currency:
            raise ValueError(f"Currency mismatch: {self.currency} vs {other.currency}")

    def __add__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, factor: int) -> "Money":
        return Money(self.amount * to_decimal(factor), self.currency)

    def display(self) -> str:
        return f"{quantize_display(self.amount)} {self.currency}"

    def persisted(self) -> Decimal:
        return quantize_persist(self.amount)


@dataclass(frozen=True)
class OrderAmounts:
    subtotal: Decimal
    discount: Decimal
    shipping_fee: Decimal
    cod_fee: Decimal
    tax: Decimal
    total: Decimal


def compute_amounts(
    subtotal: Any,
    discount: Any,
    is_cod: bool,
    shipping_fee: Any = Decimal("15000"),
    cod_fee: Any = Decimal("15000"),
    tax_rate: Any = ZERO,
) -> OrderAmounts:
    """计算订单各项金额，总额最低为 0"""
    subtotal = quantize_persist(subtotal)
    discount = quantize_persist(discount)
    shipping = quantize_persist(shipping_fee)
    cod = quantize_persist(cod_fee) if is_cod else quantize_persist(ZERO)
    tax = quantize_persist((subtotal - discount) * to_decimal(tax_rate)) if to_decimal(tax_rate) else quantize_persist(ZERO)
    total = subtotal - discount + shipping + cod + tax
    if total < ZERO:
        total = ZERO
    return OrderAmounts(
        subtotal=subtotal,
        discount=discount,
        shipping_fee=shipping,
        cod_fee=cod,
        tax=tax,
        total=quantize_persist(total),
    )


def compute_discount(
    discount_type: Optional[str],
    discount_value: Any,
    subtotal: Any,
    max_discount: Any = None,
) -> Decimal:
    """计算促销折扣：百分比（可封顶）或固定金额，未知类型为 0"""
    subtotal = to_decimal(subtotal)
    value = to_decimal(discount_value)
    if discount_type == PROMOTION_PERCENTAGE:
        discount = subtotal * value / Decimal("100")
        if max_discount is not None and discount > to_decimal(max_discount):
            discount = to_decimal(max_discount)
        return quantize_persist(discount)
    if discount_type == PROMOTION_FIXED:
        return quantize_persist(value)
    return quantize_persist(ZERO)
