import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from bookstore.models.catalog import Promotion
from bookstore.services.promotion import PromotionEvaluator
from bookstore.utils.errors import PromoExpired, PromoInactive, PromoMinAmount, PromoUsageLimitReached

NOW = datetime(2026, 3, 10, 9, 0, 0)


@pytest.fixture
def evaluator():
    return PromotionEvaluator(clock=lambda: NOW)


def make_promotion(**overrides):
    values = dict(
        code="SALE10",
        discount_type="percentage",
        discount_value=Decimal("10"),
        max_discount_amount=None,
        min_order_amount=Decimal("100"),
        max_uses=None,
        current_uses=0,
        is_active=True,
        starts_at=NOW - timedelta(days=1),
        expires_at=NOW + timedelta(days=1),
    )
    values.update(overrides)
    return Promotion(**values)


def test_valid_percentage_promotion(evaluator):
    assert evaluator.validate(make_promotion(), Decimal("200")) == Decimal("20.00")


def test_inactive_promotion(evaluator):
    with pytest.raises(PromoInactive):
        evaluator.validate(make_promotion(is_active=False), Decimal("200"))


def test_min_amount(evaluator):
    with pytest.raises(PromoMinAmount):
        evaluator.validate(make_promotion(), Decimal("99"))


def test_usage_limit(evaluator):
    with pytest.raises(PromoUsageLimitReached):
        evaluator.validate(make_promotion(max_uses=5, current_uses=5), Decimal("200"))


def test_outside_window(evaluator):
    with pytest.raises(PromoExpired):
        evaluator.validate(make_promotion(expires_at=NOW - timedelta(minutes=1)), Decimal("200"))
    with pytest.raises(PromoExpired):
        evaluator.validate(make_promotion(starts_at=NOW + timedelta(minutes=1)), Decimal("200"))


def test_checks_run_in_order(evaluator):
    """停用优先于最低金额等其他校验"""
    promotion = make_promotion(is_active=False, max_uses=1, current_uses=1, expires_at=NOW - timedelta(days=1))
    with pytest.raises(PromoInactive):
        evaluator.validate(promotion, Decimal("1"))
