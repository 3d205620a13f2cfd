from sqlalchemy.orm import Session
from bookstore.models.payment import PaymentWebhookLog
from bookstore.utils.clock import utcnow
from typing import List, Optional


class WebhookRepository:
    def __init__(self, db: Session, clock=utcnow):
        self.db = db
        self.clock = clock

    def insert(self, log: PaymentWebhookLog) -> PaymentWebhookLog:
        log.received_at = log.received_at or self.clock()
        self.db.add(log)
        self.db.flush()
        return log

    def get(self, log_id) -> Optional[PaymentWebhookLog]:
        return self.db.query(PaymentWebhookLog).filter(PaymentWebhookLog.id == log_id).first()

    def attach(self, log_id, payment_id=None, order_id=None) -> None:
        log = self.get(log_id)
        log.payment_transaction_id = payment_id
        log.order_id = order_id
        self.db.flush()

    def mark_processed(self, log_id) -> None:
        log = self.get(log_id)
        log.is_processed = True
        log.processing_error = None
        self.db.flush()

    def mark_duplicate(self, log_id) -> None:
        log = self.get(log_id)
        log.is_duplicate = True
        log.processing_error = None
        self.db.flush()

    def mark_processing_error(self, log_id, error: str, increment_retry: bool = False) -> None:
        log = self.get(log_id)
        log.processing_error = error
        if increment_retry:
            log.retry_count = (log.retry_count or 0) + 1
        self.db.flush()

    def check_idempotent(self, gateway: str, event: str, gateway_txn_id: str) -> bool:
        """是否已存在同一 (网关, 事件, 网关交易号) 的已处理记录"""
        return (
            self.db.query(PaymentWebhookLog.id)
            .filter(
                PaymentWebhookLog.gateway == gateway,
                PaymentWebhookLog.webhook_event == event,
                PaymentWebhookLog.gateway_transaction_id == gateway_txn_id,
                PaymentWebhookLog.is_processed.is_(True),
            )
            .first()
            is not None
        )

    def get_failed(self, limit: int, max_retries: int) -> List[PaymentWebhookLog]:
        """签名有效但处理失败、仍可重试的记录"""
        return (
            self.db.query(PaymentWebhookLog)
            .filter(
                PaymentWebhookLog.is_processed.is_(False),
                PaymentWebhookLog.is_duplicate.is_(False),
                PaymentWebhookLog.is_valid.is_(True),
                PaymentWebhookLog.processing_error.isnot(None),
                PaymentWebhookLog.retry_count < max_retries,
            )
            .order_by(PaymentWebhookLog.received_at.asc())
            .limit(limit)
            .all()
        )

    def list_by_payment(self, payment_id) -> List[PaymentWebhookLog]:
        return (
            self.db.query(PaymentWebhookLog)
            .filter(PaymentWebhookLog.payment_transaction_id == payment_id)
            .order_by(PaymentWebhookLog.received_at.desc())
            .all()
        )
