import pytest
from decimal import Decimal

from bookstore.utils.money import Money, compute_amounts, compute_discount, quantize_display, quantize_persist, to_decimal


def test_to_decimal_avoids_float_artifacts():
    """测试 float 转 Decimal 不带二进制误差"""
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal(None) == Decimal("0")
    with pytest.raises(ValueError):
        to_decimal("abc")


def test_rounding_modes():
    """展示用银行家舍入，落库用四舍五入"""
    assert quantize_display("2.345") == Decimal("2.34")
    assert quantize_display("2.355") == Decimal("2.36")
    assert quantize_persist("2.345") == Decimal("2.35")


def test_cod_order_amounts():
    amounts = compute_amounts(Decimal("200"), Decimal("0"), True, shipping_fee=15, cod_fee=15)
    assert amounts.subtotal == Decimal("200.00")
    assert amounts.cod_fee == Decimal("15.00")
    assert amounts.total == Decimal("230.00")


def test_non_cod_has_no_cod_fee():
    amounts = compute_amounts(Decimal("200"), Decimal("20"), False, shipping_fee=15, cod_fee=15)
    assert amounts.cod_fee == Decimal("0.00")
    assert amounts.total == Decimal("195.00")


def test_total_never_negative():
    """折扣大于小计时总额为 0"""
    amounts = compute_amounts(Decimal("10"), Decimal("100"), False, shipping_fee=15, cod_fee=15)
    assert amounts.total == Decimal("0")


def test_tax_is_applied_after_discount():
    amounts = compute_amounts(Decimal("100"), Decimal("20"), False, shipping_fee=0, cod_fee=0, tax_rate=Decimal("0.1"))
    assert amounts.tax == Decimal("8.00")
    assert amounts.total == Decimal("88.00")


def test_compute_discount():
    assert compute_discount("percentage", 10, Decimal("250")) == Decimal("25.00")
    assert compute_discount("percentage", 50, Decimal("250"), max_discount=Decimal("100")) == Decimal("100.00")
    assert compute_discount("fixed", 30, Decimal("250")) == Decimal("30.00")
    assert compute_discount("bogus", 30, Decimal("250")) == Decimal("0.00")


def test_money_currency_mismatch():
    with pytest.raises(ValueError):
        Money(Decimal("1"), "VND") + Money(Decimal("1"), "USD")
    assert (Money("1.5") * 2).persisted() == Decimal("3.00")
    assert Money("10").display() == "10.00 VND"
