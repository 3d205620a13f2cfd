from sqlalchemy.orm import Session
from bookstore.models.payment import RefundRequest, RefundStatus, OPEN_REFUND_STATUSES
from bookstore.utils.clock import utcnow
from bookstore.utils.errors import RefundNotFound
from typing import List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


class RefundRepository:
    def __init__(self, db: Session, clock=utcnow):
        self.db = db
        self.clock = clock

    def insert(self, refund: RefundRequest) -> RefundRequest:
        now = self.clock()
        refund.requested_at = now
        refund.updated_at = now
        self.db.add(refund)
        self.db.flush()
        return refund

    def get(self, refund_id, for_update: bool = False) -> Optional[RefundRequest]:
        query = self.db.query(RefundRequest).filter(RefundRequest.id == refund_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def _require(self, refund_id) -> RefundRequest:
        refund = self.get(refund_id, for_update=True)
        if not refund:
            raise RefundNotFound()
        return refund

    def get_by_gateway_refund_id(self, gateway_refund_id: str, payment_id=None) -> Optional[RefundRequest]:
        """按网关退款号查找

        网关退款号只精确到秒，不同支付之间可能重复：能确定支付时一并过滤，
        否则命中多条视为无法匹配，返回 None。
        """
        query = self.db.query(RefundRequest).filter(RefundRequest.gateway_refund_id == gateway_refund_id)
        if payment_id is not None:
            query = query.filter(RefundRequest.payment_transaction_id == payment_id)
        matches = query.limit(2).all()
        if len(matches) > 1:
            logger.warning(f"Ambiguous gateway refund id | gateway refund：{gateway_refund_id} | payment：{payment_id}")
            return None
        return matches[0] if matches else None

    def has_open(self, payment_id) -> bool:
        return (
            self.db.query(RefundRequest.id)
            .filter(
                RefundRequest.payment_transaction_id == payment_id,
                RefundRequest.status.in_(list(OPEN_REFUND_STATUSES)),
            )
            .first()
            is not None
        )

    def approve(self, refund_id, admin_id, notes: Optional[str]) -> RefundRequest:
        refund = self._require(refund_id)
        now = self.clock()
        refund.status = RefundStatus.APPROVED
        refund.approved_by = admin_id
        refund.approved_at = now
        refund.admin_notes = notes
        refund.updated_at = now
        self.db.flush()
        return refund

    def reject(self, refund_id, admin_id, reason: str) -> RefundRequest:
        refund = self._require(refund_id)
        now = self.clock()
        refund.status = RefundStatus.REJECTED
        refund.rejected_by = admin_id
        refund.rejected_at = now
        refund.rejection_reason = reason
        refund.updated_at = now
        self.db.flush()
        return refund

    def update_gateway_refund(self, refund_id, gateway_refund_id: str, response: dict) -> RefundRequest:
        refund = self._require(refund_id)
        now = self.clock()
        refund.status = RefundStatus.PROCESSING
        refund.gateway_refund_id = gateway_refund_id
        refund.gateway_refund_response = response
        refund.processing_at = now
        refund.updated_at = now
        self.db.flush()
        return refund

    def mark_failed(self, refund_id, message: str, response: dict = None) -> RefundRequest:
        refund = self._require(refund_id)
        now = self.clock()
        refund.status = RefundStatus.FAILED
        refund.gateway_refund_response = response or {"error": message}
        refund.failed_at = now
        refund.updated_at = now
        self.db.flush()
        return refund

    def mark_completed(self, refund_id, response: dict = None) -> RefundRequest:
        refund = self._require(refund_id)
        now = self.clock()
        refund.status = RefundStatus.COMPLETED
        if response is not None:
            refund.gateway_refund_response = response
        refund.completed_at = now
        refund.updated_at = now
        self.db.flush()
        return refund

    def list_pending(self, page: int, limit: int) -> Tuple[List[RefundRequest], int]:
        query = self.db.query(RefundRequest).filter(RefundRequest.status == RefundStatus.PENDING)
        total = query.count()
        rows = (
            query.order_by(RefundRequest.requested_at.asc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total
