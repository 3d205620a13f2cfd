"""退款服务：用户申请、管理员审批 / 拒绝、调用网关退款"""
from datetime import timedelta
from math import ceil
from typing import Dict
import logging

from bookstore.gateways.base import PaymentGatewayPort
from bookstore.models.order import OrderStatus
from bookstore.models.payment import PaymentGateway, PaymentStatus, RefundRequest, RefundStatus
from bookstore.repository.audit_repo import AuditRepository
from bookstore.repository.order_repo import OrderRepository
from bookstore.repository.payment_repo import PaymentRepository
from bookstore.repository.refund_repo import RefundRepository
from bookstore.schemas.payment_schemas import (
    RefundRequestBody, ApproveRefundRequest, RejectRefundRequest, RefundResponse, RefundListResponse,
)
from bookstore.utils.clock import utcnow
from bookstore.utils.database import UnitOfWork
from bookstore.utils.errors import (
    AppError, CODNoRefund, InvalidGateway, InvalidStatus, NotOwner, OrderCannotRefund, OrderNotFound,
    PaymentNotFound, PaymentNotSuccessful, RefundAlreadyExists, RefundFailed, RefundNotAllowed,
    RefundNotFound, RefundWindowExpired,
)
from bookstore.utils.settings import Settings

logger = logging.getLogger(__name__)

REFUNDABLE_ORDER_STATUSES = {OrderStatus.CANCELLED, OrderStatus.RETURNED, OrderStatus.DELIVERED}


class RefundService:
    def __init__(self, session_factory, settings: Settings, gateways: Dict[str, PaymentGatewayPort], clock=utcnow):
        self.session_factory = session_factory
        self.settings = settings
        self.gateways = gateways
        self.clock = clock

    async def request_refund(self, user_id, payment_id, req: RefundRequestBody) -> RefundResponse:
        """用户申请全额退款

        校验顺序：归属 -> 支付可退 -> 无进行中的退款 -> 订单状态 -> 退款时效。
        """
        logger.info(f"Refund requested | user：{user_id} | payment：{payment_id}")
        with UnitOfWork(self.session_factory) as uow:
            db = uow.session
            payments = PaymentRepository(db, self.clock)
            refunds = RefundRepository(db, self.clock)

            payment = payments.get_by_id(payment_id, for_update=True)
            if not payment:
                raise PaymentNotFound()
            order = OrderRepository(db, self.clock).get_by_id(payment.order_id)
            if not order:
                raise OrderNotFound()
            if order.user_id != user_id:
                raise NotOwner()

            if PaymentGateway(payment.gateway) == PaymentGateway.COD:
                raise CODNoRefund()
            if PaymentStatus(payment.status) == PaymentStatus.REFUNDED:
                raise RefundNotAllowed("Payment has already been fully refunded")
            if PaymentStatus(payment.status) != PaymentStatus.SUCCESS:
                raise PaymentNotSuccessful()
            if not payment.can_be_refunded():
                raise RefundNotAllowed()
            if refunds.has_open(payment.id):
                raise RefundAlreadyExists()

            status = OrderStatus(order.status)
            if status not in REFUNDABLE_ORDER_STATUSES:
                raise OrderCannotRefund(details={"status": status.value})
            if status == OrderStatus.DELIVERED:
                delivered_at = order.delivered_at or order.updated_at
                deadline = delivered_at + timedelta(days=self.settings.refund_window_days)
                if self.clock() > deadline:
                    raise RefundWindowExpired(details={"delivered_at": delivered_at.isoformat()})

            refund = refunds.insert(RefundRequest(
                payment_transaction_id=payment.id,
                order_id=order.id,
                requested_by=user_id,
                requested_amount=payment.amount - (payment.refund_amount or 0),
                reason=req.reason,
                proof_images=list(req.proof_images),
                status=RefundStatus.PENDING,
            ))
            response = RefundResponse.model_validate(refund).model_copy(update={
                "message": "Refund request submitted. It will be processed within 3-5 business days.",
            })

        logger.info(f"Refund request created | refund：{response.id} | amount：{response.requested_amount}")
        return response

    async def approve(self, admin_id, refund_id, req: ApproveRefundRequest) -> RefundResponse:
        logger.info(f"Approving refund | admin：{admin_id} | refund：{refund_id}")
        failure = None
        with UnitOfWork(self.session_factory) as uow:
            db = uow.session
            refunds = RefundRepository(db, self.clock)
            refund = refunds.get(refund_id, for_update=True)
            if not refund:
                raise RefundNotFound()
            if not refund.can_be_approved():
                raise InvalidStatus(f"Refund is {RefundStatus(refund.status).value}, only pending refunds can be approved")

            payment = PaymentRepository(db, self.clock).get_by_id(refund.payment_transaction_id)
            port = self.gateways.get(PaymentGateway(payment.gateway).value)
            if port is None:
                raise InvalidGateway(f"Gateway {payment.gateway} does not support refunds")

            refunds.approve(refund.id, admin_id, req.notes)
            try:
                result = await port.initiate_refund(
                    original_txn_id=payment.transaction_id,
                    original_date=payment.completed_at,
                    original_amount=payment.amount,
                    refund_amount=refund.requested_amount,
                    reason=refund.reason,
                    transaction_ref=str(payment.id),
                )
            except AppError as e:
                failure = e
                logger.error(f"Gateway refund failed | refund：{refund.id} | error：{str(e)}")
                refunds.mark_failed(refund.id, e.message, {"error": e.message, "code": e.code})
            else:
                refunds.update_gateway_refund(refund.id, result.refund_id, result.raw)
                logger.info(f"Gateway refund accepted | refund：{refund.id} | gateway refund：{result.refund_id}")

            AuditRepository(db, self.clock).record(admin_id, "refund_approve", "refund_request", refund.id, {
                "notes": req.notes,
                "gateway_error": failure.message if failure else None,
            })
            response = RefundResponse.model_validate(refund)

        if failure is not None:
            if isinstance(failure, RefundFailed):
                raise failure
            raise RefundFailed(failure.message, cause=failure)
        return response

    async def reject(self, admin_id, refund_id, req: RejectRefundRequest) -> RefundResponse:
        with UnitOfWork(self.session_factory) as uow:
            refunds = RefundRepository(uow.session, self.clock)
            refund = refunds.get(refund_id, for_update=True)
            if not refund:
                raise RefundNotFound()
            if not refund.can_be_rejected():
                raise InvalidStatus(f"Refund is {RefundStatus(refund.status).value}, only pending refunds can be rejected")
            refund = refunds.reject(refund.id, admin_id, req.reason)
            AuditRepository(uow.session, self.clock).record(admin_id, "refund_reject", "refund_request", refund.id, {
                "reason": req.reason,
            })
            response = RefundResponse.model_validate(refund)
        logger.info(f"Refund rejected | admin：{admin_id} | refund：{refund_id}")
        return response

    async def get_refund_status(self, user_id, refund_id) -> RefundResponse:
        with UnitOfWork(self.session_factory) as uow:
            refund = RefundRepository(uow.session, self.clock).get(refund_id)
            if not refund:
                raise RefundNotFound()
            if refund.requested_by != user_id:
                raise NotOwner()
            return RefundResponse.model_validate(refund)

    async def list_pending_refunds(self, page: int = 1, limit: int = 20) -> RefundListResponse:
        with UnitOfWork(self.session_factory) as uow:
            rows, total = RefundRepository(uow.session, self.clock).list_pending(page, limit)
            return RefundListResponse(
                refunds=[RefundResponse.model_validate(r) for r in rows],
                total=total,
                page=page,
                limit=limit,
                total_pages=ceil(total / limit) if total else 0,
            )
