from datetime import datetime
from decimal import Decimal
from typing import Optional

from bookstore.models.catalog import Promotion
from bookstore.utils.clock import utcnow
from bookstore.utils.errors import PromoExpired, PromoInactive, PromoMinAmount, PromoUsageLimitReached
from bookstore.utils.money import compute_discount, to_decimal


class PromotionEvaluator:
    def __init__(self, clock=utcnow):
        self.clock = clock

    def validate(self, promotion: Promotion, subtotal: Decimal, now: Optional[datetime] = None) -> Decimal:
        """校验促销并返回折扣金额"""
        now = now or self.clock()
        if not promotion.is_active:
            raise PromoInactive()
        if to_decimal(subtotal) < to_decimal(promotion.min_order_amount):
            raise PromoMinAmount(details={"min_order_amount": str(promotion.min_order_amount)})
        if promotion.max_uses is not None and (promotion.current_uses or 0) >= promotion.max_uses:
            raise PromoUsageLimitReached()
        if now < promotion.starts_at or now > promotion.expires_at:
            raise PromoExpired()
        return compute_discount(
            promotion.discount_type,
            promotion.discount_value,
            subtotal,
            promotion.max_discount_amount,
        )
