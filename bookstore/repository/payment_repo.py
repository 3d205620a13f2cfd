from sqlalchemy import update
from sqlalchemy.orm import Session
from bookstore.models.order import Order
from bookstore.models.payment import PaymentTransaction, PaymentStatus, PaymentGateway
from bookstore.utils.clock import utcnow
from bookstore.utils.errors import PaymentNotFound
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [PaymentStatus.PENDING, PaymentStatus.PROCESSING]


class PaymentRepository:
    def __init__(self, db: Session, clock=utcnow):
        self.db = db
        self.clock = clock

    def insert(self, attempt: PaymentTransaction) -> PaymentTransaction:
        now = self.clock()
        attempt.initiated_at = attempt.initiated_at or now
        attempt.created_at = now
        attempt.updated_at = now
        self.db.add(attempt)
        self.db.flush()
        return attempt

    def get_by_id(self, payment_id, for_update: bool = False) -> Optional[PaymentTransaction]:
        query = self.db.query(PaymentTransaction).filter(PaymentTransaction.id == payment_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def _require(self, payment_id, for_update: bool = True) -> PaymentTransaction:
        payment = self.get_by_id(payment_id, for_update=for_update)
        if not payment:
            raise PaymentNotFound()
        return payment

    def update_status(self, payment_id, status: PaymentStatus) -> PaymentTransaction:
        payment = self._require(payment_id)
        now = self.clock()
        payment.status = PaymentStatus(status)
        if status == PaymentStatus.PROCESSING:
            payment.processing_at = now
        payment.updated_at = now
        self.db.flush()
        return payment

    def set_payment_url(self, payment_id, url: str) -> None:
        payment = self._require(payment_id)
        payment.payment_url = url
        self.db.flush()

    def mark_success(self, payment_id, gateway_txn_id: Optional[str], raw_response: dict, details: dict) -> PaymentTransaction:
        payment = self._require(payment_id)
        now = self.clock()
        payment.status = PaymentStatus.SUCCESS
        payment.transaction_id = gateway_txn_id
        payment.gateway_response = raw_response
        payment.payment_details = details
        payment.error_code = None
        payment.error_message = None
        payment.completed_at = now
        payment.updated_at = now
        self.db.flush()
        return payment

    def mark_failed(self, payment_id, code: str, message: str, raw_response: dict = None) -> PaymentTransaction:
        payment = self._require(payment_id)
        now = self.clock()
        payment.status = PaymentStatus.FAILED
        payment.error_code = code
        payment.error_message = message
        if raw_response is not None:
            payment.gateway_response = raw_response
        payment.failed_at = now
        payment.updated_at = now
        self.db.flush()
        return payment

    def mark_cancelled(self, payment_id, reason: str) -> bool:
        """只取消仍处于 pending / processing 的支付，返回是否实际更新"""
        now = self.clock()
        result = self.db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == payment_id, PaymentTransaction.status.in_(ACTIVE_STATUSES))
            .values(status=PaymentStatus.CANCELLED, error_message=reason, failed_at=now, updated_at=now)
        )
        return result.rowcount > 0

    def mark_refunded(self, payment_id, amount: Decimal, reason: str) -> PaymentTransaction:
        payment = self._require(payment_id)
        now = self.clock()
        refunded = (payment.refund_amount or Decimal("0")) + amount
        if refunded > payment.amount:
            raise ValueError("Refund amount exceeds payment amount")
        payment.refund_amount = refunded
        payment.refund_reason = reason
        payment.refunded_at = now
        if refunded >= payment.amount:
            payment.status = PaymentStatus.REFUNDED
        payment.updated_at = now
        self.db.flush()
        return payment

    def has_successful(self, order_id) -> bool:
        return (
            self.db.query(PaymentTransaction.id)
            .filter(PaymentTransaction.order_id == order_id, PaymentTransaction.status == PaymentStatus.SUCCESS)
            .first()
            is not None
        )

    def get_successful(self, order_id) -> Optional[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.order_id == order_id, PaymentTransaction.status == PaymentStatus.SUCCESS)
            .first()
        )

    def check_retry_limit(self, order_id, max_retries: int) -> Tuple[bool, int]:
        """失败 / 取消的尝试次数未达上限时允许重试"""
        attempts = (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.order_id == order_id,
                PaymentTransaction.status.in_([PaymentStatus.FAILED, PaymentStatus.CANCELLED]),
            )
            .count()
        )
        return attempts < max_retries, attempts

    def get_active(self, order_id) -> List[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.order_id == order_id, PaymentTransaction.status.in_(ACTIVE_STATUSES))
            .all()
        )

    def get_expired(self, limit: int, timeout_minutes: int) -> List[PaymentTransaction]:
        cutoff = self.clock() - timedelta(minutes=timeout_minutes)
        return (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.status.in_(ACTIVE_STATUSES),
                PaymentTransaction.gateway != PaymentGateway.COD,
                PaymentTransaction.initiated_at < cutoff,
            )
            .order_by(PaymentTransaction.initiated_at.asc())
            .limit(limit)
            .all()
        )

    def list_by_user(self, user_id, page: int, limit: int) -> Tuple[List[PaymentTransaction], int]:
        query = (
            self.db.query(PaymentTransaction)
            .join(Order, Order.id == PaymentTransaction.order_id)
            .filter(Order.user_id == user_id)
        )
        total = query.count()
        rows = (
            query.order_by(PaymentTransaction.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total

    def admin_list(self, status: Optional[PaymentStatus], gateway: Optional[PaymentGateway], page: int, limit: int):
        query = self.db.query(PaymentTransaction)
        if status:
            query = query.filter(PaymentTransaction.status == PaymentStatus(status))
        if gateway:
            query = query.filter(PaymentTransaction.gateway == PaymentGateway(gateway))
        total = query.count()
        rows = (
            query.order_by(PaymentTransaction.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total
