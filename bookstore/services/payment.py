"""支付服务

发起支付、处理网关回调（幂等）、超时取消、失败回调重试、人工对账。
回调日志先单独提交，保证签名失败 / 处理失败的记录都能留存审计。
"""
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from math import ceil
from typing import Any, Dict, Optional
import logging
import uuid

from sqlalchemy.exc import IntegrityError

from bookstore.gateways.base import PaymentGatewayPort, WebhookPayload, EVENT_REFUND_SUCCESS, EVENT_REFUND_FAILED
from bookstore.models.order import OrderStatus, OrderPaymentStatus, PaymentMethod
from bookstore.models.payment import (
    PaymentTransaction, PaymentWebhookLog, PaymentGateway, PaymentStatus, RefundStatus, REDIRECT_GATEWAYS,
)
from bookstore.repository.audit_repo import AuditRepository
from bookstore.repository.order_repo import OrderRepository
from bookstore.repository.payment_repo import PaymentRepository
from bookstore.repository.refund_repo import RefundRepository
from bookstore.repository.webhook_repo import WebhookRepository
from bookstore.schemas.payment_schemas import (
    CreatePaymentRequest, CreatePaymentResponse, PaymentResponse, PaymentListResponse,
    AdminPaymentDetailResponse, WebhookLogSummary, ReconcileRequest,
)
from bookstore.utils.clock import utcnow
from bookstore.utils.database import UnitOfWork
from bookstore.utils.errors import (
    AppError, GatewayTimeout, GatewayUnavailable, InternalError, InvalidGateway, InvalidRequest, InvalidSignature,
    NotOwner, OrderAlreadyPaid, OrderCancelled, OrderNotFound, OrderNotPending, PaymentNotFound,
    RefundNotFound, RetryLimitExceeded, WebhookProcessingFailed,
)
from bookstore.utils.money import quantize_persist
from bookstore.utils.settings import Settings

logger = logging.getLogger(__name__)

SUPERSEDED_REASON = "Superseded by a new payment attempt"


class PaymentService:
    def __init__(
        self,
        session_factory,
        settings: Settings,
        gateways: Dict[str, PaymentGatewayPort],
        order_service,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.gateways = gateways
        self.order_service = order_service
        self.clock = clock

    @property
    def timeout_reason(self) -> str:
        return f"Payment timeout after {self.settings.payment_timeout_minutes} minutes"

    def _gateway(self, name: str) -> PaymentGatewayPort:
        port = self.gateways.get(name)
        if port is None:
            raise InvalidGateway(f"Gateway {name} is not available")
        return port

    # 发起支付
    async def create_payment(self, user_id, req: CreatePaymentRequest, client_ip: Optional[str] = None) -> CreatePaymentResponse:
        gateway = PaymentGateway(req.gateway)
        logger.info(f"Creating payment | user：{user_id} | order：{req.order_id} | gateway：{gateway.value}")
        port = self._gateway(gateway.value) if gateway in REDIRECT_GATEWAYS else None

        with UnitOfWork(self.session_factory) as uow:
            orders = OrderRepository(uow.session, self.clock)
            payments = PaymentRepository(uow.session, self.clock)

            order = orders.get_by_id(req.order_id, for_update=True)
            if not order:
                raise OrderNotFound()
            if order.user_id != user_id:
                raise NotOwner()
            if order.status == OrderStatus.CANCELLED:
                raise OrderCancelled()

            is_cod_order = order.payment_method == PaymentMethod.COD
            if is_cod_order != (gateway == PaymentGateway.COD):
                raise InvalidGateway(f"Gateway {gateway.value} does not match order payment method")

            allowed = {OrderStatus.PENDING, OrderStatus.CONFIRMED} if is_cod_order else {OrderStatus.PENDING}
            if OrderStatus(order.status) not in allowed:
                raise OrderNotPending()
            if order.payment_status == OrderPaymentStatus.PAID or payments.has_successful(order.id):
                raise OrderAlreadyPaid()

            can_retry, attempts = payments.check_retry_limit(order.id, self.settings.max_payment_retries)
            if not can_retry:
                raise RetryLimitExceeded(details={"attempts": attempts})

            for active in payments.get_active(order.id):
                payments.mark_cancelled(active.id, SUPERSEDED_REASON)
                attempts += 1

            attempt = payments.insert(PaymentTransaction(
                order_id=order.id,
                gateway=gateway,
                amount=order.total,
                currency=self.settings.currency,
                status=PaymentStatus.PENDING,
                retry_count=min(attempts, self.settings.max_payment_retries),
                initiated_at=self.clock(),
            ))
            payment_id = attempt.id
            amount = attempt.amount
            initiated_at = attempt.initiated_at
            order_number = order.order_number

        expires_at = initiated_at + timedelta(minutes=self.settings.payment_timeout_minutes)
        response = dict(
            payment_transaction_id=payment_id,
            order_id=req.order_id,
            gateway=gateway,
            amount=amount,
            currency=self.settings.currency,
            expires_at=expires_at,
        )

        if port is None:
            if gateway == PaymentGateway.COD:
                message = "Order confirmed. Please pay cash on delivery."
            else:
                message = f"Please transfer {amount} {self.settings.currency} with reference {order_number}"
            logger.info(f"Offline payment registered | payment：{payment_id} | gateway：{gateway.value}")
            return CreatePaymentResponse(status=PaymentStatus.PENDING, message=message, **response)

        try:
            payment_url = await port.create_payment_url(
                str(payment_id),
                amount,
                order_number.replace("-", ""),
                return_url=req.return_url,
                client_ip=client_ip,
            )
        except AppError as e:
            logger.error(f"Failed to create payment URL | payment：{payment_id} | error：{str(e)}")
            self._fail_attempt(payment_id, GatewayUnavailable.code, f"Failed to create payment URL: {e.message}")
            if isinstance(e, (GatewayTimeout, GatewayUnavailable)):
                raise
            raise GatewayUnavailable(cause=e)

        try:
            with UnitOfWork(self.session_factory) as uow:
                payments = PaymentRepository(uow.session, self.clock)
                payments.update_status(payment_id, PaymentStatus.PROCESSING)
                payments.set_payment_url(payment_id, payment_url)
        except Exception as e:
            # 避免留下孤立的 processing 记录
            logger.error(f"Failed to mark payment processing | payment：{payment_id} | error：{str(e)}", exc_info=True)
            self._fail_attempt(payment_id, InternalError.code, "Failed to update payment status")
            raise InternalError("Failed to initiate payment", cause=e)

        logger.info(f"Payment URL issued | payment：{payment_id} | gateway：{gateway.value} | order：{order_number}")
        return CreatePaymentResponse(status=PaymentStatus.PROCESSING, payment_url=payment_url, **response)

    def _fail_attempt(self, payment_id, code: str, message: str) -> None:
        try:
            with UnitOfWork(self.session_factory) as uow:
                PaymentRepository(uow.session, self.clock).mark_failed(payment_id, code, message)
        except Exception as e:
            logger.error(f"Failed to mark payment failed | payment：{payment_id} | error：{str(e)}", exc_info=True)

    # 回调处理
    async def process_webhook(self, gateway_name: str, body: Dict[str, Any], headers: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """处理网关回调：先落日志，再校验签名和报文，最后幂等地应用结果"""
        port = self._gateway(gateway_name)
        is_valid = port.verify_signature(body)
        payload, parse_error = None, None
        try:
            payload = port.parse_webhook(body)
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            parse_error = e

        if not is_valid:
            processing_error = "Invalid signature"
        elif parse_error is not None:
            processing_error = f"Malformed webhook body: {parse_error}"
        else:
            processing_error = None
        with UnitOfWork(self.session_factory) as uow:
            log = WebhookRepository(uow.session, self.clock).insert(PaymentWebhookLog(
                gateway=gateway_name,
                webhook_event=payload.event if payload else None,
                gateway_transaction_id=payload.idempotency_key if payload else None,
                headers=headers,
                body=body,
                signature=payload.signature if payload else None,
                is_valid=is_valid,
                processing_error=processing_error,
            ))
            log_id = log.id

        if not is_valid:
            logger.warning(f"Invalid webhook signature | gateway：{gateway_name} | log：{log_id}")
            raise InvalidSignature()
        if parse_error is not None:
            logger.warning(f"Malformed webhook body | gateway：{gateway_name} | log：{log_id} | error：{str(parse_error)}")
            raise InvalidRequest("Malformed webhook body", cause=parse_error)

        return await self._apply_webhook(port, payload, log_id)

    async def _apply_webhook(self, port: PaymentGatewayPort, payload: WebhookPayload, log_id, is_retry: bool = False) -> Dict[str, Any]:
        key = payload.idempotency_key
        try:
            with UnitOfWork(self.session_factory) as uow:
                webhooks = WebhookRepository(uow.session, self.clock)
                if webhooks.check_idempotent(payload.gateway, payload.event, key):
                    webhooks.mark_duplicate(log_id)
                    logger.info(f"Duplicate webhook ignored | gateway：{payload.gateway} | event：{payload.event} | txn：{key}")
                    return {"status": "duplicate", "log_id": str(log_id)}

                if payload.event in (EVENT_REFUND_SUCCESS, EVENT_REFUND_FAILED):
                    self._apply_refund_event(uow, payload, log_id)
                else:
                    self._apply_payment_event(uow, port, payload, log_id)
                webhooks.mark_processed(log_id)
        except IntegrityError as e:
            # 并发重复回调被唯一索引拦截
            if self._is_duplicate(payload, key):
                self._mark_log(log_id, duplicate=True)
                logger.info(f"Concurrent duplicate webhook | gateway：{payload.gateway} | txn：{key}")
                return {"status": "duplicate", "log_id": str(log_id)}
            self._mark_log(log_id, error=f"Integrity error: {e.orig}", increment_retry=is_retry)
            raise WebhookProcessingFailed(cause=e)
        except AppError as e:
            self._mark_log(log_id, error=str(e), increment_retry=is_retry)
            raise
        except Exception as e:
            logger.error(f"Webhook processing failed | log：{log_id} | error：{str(e)}", exc_info=True)
            self._mark_log(log_id, error=str(e), increment_retry=is_retry)
            raise WebhookProcessingFailed(cause=e)

        logger.info(f"Webhook processed | gateway：{payload.gateway} | event：{payload.event} | ref：{payload.transaction_ref}")
        return {"status": "processed", "log_id": str(log_id)}

    def _is_duplicate(self, payload: WebhookPayload, key: str) -> bool:
        with UnitOfWork(self.session_factory) as uow:
            return WebhookRepository(uow.session, self.clock).check_idempotent(payload.gateway, payload.event, key)

    def _mark_log(self, log_id, error: str = None, duplicate: bool = False, increment_retry: bool = False) -> None:
        try:
            with UnitOfWork(self.session_factory) as uow:
                webhooks = WebhookRepository(uow.session, self.clock)
                if duplicate:
                    webhooks.mark_duplicate(log_id)
                else:
                    webhooks.mark_processing_error(log_id, error, increment_retry=increment_retry)
        except Exception as e:
            logger.error(f"Failed to update webhook log | log：{log_id} | error：{str(e)}", exc_info=True)

    def _apply_payment_event(self, uow: UnitOfWork, port: PaymentGatewayPort, payload: WebhookPayload, log_id) -> None:
        db = uow.session
        payments = PaymentRepository(db, self.clock)
        orders = OrderRepository(db, self.clock)
        audit = AuditRepository(db, self.clock)

        try:
            payment_id = uuid.UUID(str(payload.transaction_ref))
        except ValueError:
            raise PaymentNotFound(f"Unknown transaction reference {payload.transaction_ref}")
        payment = payments.get_by_id(payment_id, for_update=True)
        if not payment:
            raise PaymentNotFound()
        WebhookRepository(db, self.clock).attach(log_id, payment.id, payment.order_id)

        if payload.amount is not None and quantize_persist(payload.amount) != quantize_persist(payment.amount):
            logger.error(f"Webhook amount mismatch | payment：{payment.id} | expected：{payment.amount} | got：{payload.amount}")
            raise InvalidRequest("Webhook amount does not match payment amount")

        if not payload.success:
            self._apply_payment_failure(orders, payments, port, payment, payload)
            return

        if payment.status == PaymentStatus.SUCCESS:
            logger.info(f"Payment already successful | payment：{payment.id}")
            return

        other = payments.get_successful(payment.order_id)
        if other and other.id != payment.id:
            logger.critical(
                f"Duplicate successful payment for order | order：{payment.order_id} | paid：{other.id} | duplicate：{payment.id}"
            )
            payments.mark_failed(payment.id, OrderAlreadyPaid.code, "Duplicate payment for an already paid order, manual refund required", payload.raw)
            audit.record(None, "duplicate_payment_detected", "payment_transaction", payment.id, {
                "order_id": str(payment.order_id),
                "gateway_transaction_id": payload.gateway_txn_id,
            })
            return

        payment = payments.mark_success(payment.id, payload.gateway_txn_id, payload.raw, payload.details)
        order = orders.get_by_id(payment.order_id, for_update=True)
        if order.status == OrderStatus.CANCELLED:
            logger.critical(
                f"Payment succeeded for cancelled order, needs reconciliation | order：{order.order_number} | payment：{payment.id}"
            )
            audit.record(None, "payment_success_on_cancelled_order", "order", order.id, {
                "payment_id": str(payment.id),
                "amount": str(payment.amount),
                "gateway_transaction_id": payload.gateway_txn_id,
            })
        self._sync_order(orders, order.id, OrderPaymentStatus.PAID, payment.completed_at, actor=None, note="payment_success")

    def _apply_payment_failure(self, orders, payments, port, payment, payload: WebhookPayload) -> None:
        mapping = port.map_failure(payload.result_code)
        if mapping is None:
            if payment.status == PaymentStatus.PENDING:
                payments.update_status(payment.id, PaymentStatus.PROCESSING)
            logger.info(f"Payment still processing at gateway | payment：{payment.id}")
            return
        if payment.status == PaymentStatus.SUCCESS:
            logger.warning(f"Failure webhook ignored for successful payment | payment：{payment.id} | code：{payload.result_code}")
            return

        error_cls, message = mapping
        payments.mark_failed(payment.id, error_cls.code, message, payload.raw)
        order = orders.get_by_id(payment.order_id)
        if order.payment_status != OrderPaymentStatus.PAID:
            self._sync_order(orders, order.id, OrderPaymentStatus.FAILED, None, actor=None, note=None)
        logger.info(f"Payment failed | payment：{payment.id} | gateway code：{payload.result_code} | code：{error_cls.code}")

    def _apply_refund_event(self, uow: UnitOfWork, payload: WebhookPayload, log_id) -> None:
        db = uow.session
        refunds = RefundRepository(db, self.clock)
        # 退款请求时 transaction_ref 传的是支付 ID，用它限定退款号所属的支付
        try:
            payment_id = uuid.UUID(str(payload.transaction_ref)) if payload.transaction_ref else None
        except ValueError:
            payment_id = None
        refund = refunds.get_by_gateway_refund_id(payload.refund_id or payload.gateway_txn_id, payment_id)
        if not refund:
            raise RefundNotFound()
        WebhookRepository(db, self.clock).attach(log_id, refund.payment_transaction_id, refund.order_id)

        if refund.status != RefundStatus.PROCESSING:
            logger.info(f"Refund webhook ignored | refund：{refund.id} | status：{RefundStatus(refund.status).value}")
            return

        if payload.event == EVENT_REFUND_SUCCESS:
            refunds.mark_completed(refund.id, payload.raw)
            PaymentRepository(db, self.clock).mark_refunded(refund.payment_transaction_id, refund.requested_amount, refund.reason)
            self._sync_order(OrderRepository(db, self.clock), refund.order_id, OrderPaymentStatus.REFUNDED, None, actor=None, note=None)
            logger.info(f"Refund completed | refund：{refund.id} | amount：{refund.requested_amount}")
        else:
            refunds.mark_failed(refund.id, payload.message or "Gateway refund failed", payload.raw)
            logger.warning(f"Refund failed at gateway | refund：{refund.id} | message：{payload.message}")

    def _sync_order(self, orders: OrderRepository, order_id, payment_status: OrderPaymentStatus, paid_at, actor, note) -> None:
        """支付结果同步到订单，状态推进时写入状态历史"""
        before = orders.get_by_id(order_id)
        previous = OrderStatus(before.status)
        order = orders.apply_payment_result(order_id, payment_status, paid_at)
        if OrderStatus(order.status) != previous:
            orders.add_history(order.id, previous, order.status, changed_by=actor, notes=note)

    # 后台任务
    async def cancel_expired(self, batch: int = None) -> Dict[str, int]:
        """取消超时未完成的支付并取消对应订单，单条失败不影响整批"""
        batch = batch or self.settings.expire_sweep_batch
        with UnitOfWork(self.session_factory) as uow:
            expired = [
                (p.id, p.order_id)
                for p in PaymentRepository(uow.session, self.clock).get_expired(batch, self.settings.payment_timeout_minutes)
            ]

        stats = {"expired": len(expired), "cancelled_payments": 0, "cancelled_orders": 0, "errors": 0}
        for payment_id, order_id in expired:
            try:
                with UnitOfWork(self.session_factory) as uow:
                    payments = PaymentRepository(uow.session, self.clock)
                    cancelled = payments.mark_cancelled(payment_id, self.timeout_reason)
                    still_active = [p for p in payments.get_active(order_id) if p.id != payment_id]
                if not cancelled:
                    continue
                stats["cancelled_payments"] += 1
                if still_active:
                    logger.info(f"Order has another active payment, skip cancel | order：{order_id}")
                    continue
                if await self.order_service.cancel_by_system(order_id, self.timeout_reason, "payment_timeout"):
                    stats["cancelled_orders"] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error(f"Failed to cancel expired payment | payment：{payment_id} | order：{order_id} | error：{str(e)}", exc_info=True)

        if expired:
            logger.info(f"Expired payment sweep finished | stats：{stats}")
        return stats

    async def retry_failed_webhooks(self, batch: int = None) -> Dict[str, int]:
        batch = batch or self.settings.webhook_retry_batch
        with UnitOfWork(self.session_factory) as uow:
            failed = [
                (log.id, log.gateway, dict(log.body or {}))
                for log in WebhookRepository(uow.session, self.clock).get_failed(batch, self.settings.webhook_max_retries)
            ]

        stats = {"retried": len(failed), "succeeded": 0, "errors": 0}
        for log_id, gateway_name, body in failed:
            try:
                port = self._gateway(gateway_name)
                payload = port.parse_webhook(body)
            except (InvalidGateway, KeyError, TypeError, ValueError, InvalidOperation) as e:
                # 报文本身无法解析，累计重试次数直到放弃
                stats["errors"] += 1
                self._mark_log(log_id, error=str(e), increment_retry=True)
                logger.warning(f"Webhook retry skipped, cannot parse | log：{log_id} | error：{str(e)}")
                continue
            try:
                await self._apply_webhook(port, payload, log_id, is_retry=True)
                stats["succeeded"] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.warning(f"Webhook retry failed | log：{log_id} | error：{str(e)}")

        if failed:
            logger.info(f"Webhook retry finished | stats：{stats}")
        return stats

    # 人工对账
    async def admin_reconcile(self, admin_id, payment_id, req: ReconcileRequest) -> AdminPaymentDetailResponse:
        logger.info(f"Admin reconciling payment | admin：{admin_id} | payment：{payment_id} | status：{req.status}")
        with UnitOfWork(self.session_factory) as uow:
            db = uow.session
            payments = PaymentRepository(db, self.clock)
            orders = OrderRepository(db, self.clock)
            payment = payments.get_by_id(payment_id, for_update=True)
            if not payment:
                raise PaymentNotFound()
            previous_status = PaymentStatus(payment.status).value

            if req.status == "success":
                other = payments.get_successful(payment.order_id)
                if other:
                    raise OrderAlreadyPaid()
                gateway_txn_id = req.gateway_transaction_id or payment.transaction_id
                payment = payments.mark_success(
                    payment.id,
                    gateway_txn_id,
                    {"manual_reconciliation": True, "reconciled_by": str(admin_id), "notes": req.notes},
                    {"gateway_transaction_id": gateway_txn_id},
                )
                self._sync_order(orders, payment.order_id, OrderPaymentStatus.PAID, payment.completed_at, actor=admin_id, note="manual_reconciliation")
            else:
                if payment.status == PaymentStatus.SUCCESS:
                    raise InvalidRequest("Successful payments must be refunded, not failed")
                payments.mark_failed(payment.id, GatewayUnavailable.code, f"Manual reconciliation: {req.notes}")
                order = orders.get_by_id(payment.order_id)
                if order.payment_status != OrderPaymentStatus.PAID:
                    self._sync_order(orders, order.id, OrderPaymentStatus.FAILED, None, actor=admin_id, note=None)

            AuditRepository(db, self.clock).record(admin_id, "payment_reconcile", "payment_transaction", payment.id, {
                "previous_status": previous_status,
                "new_status": req.status,
                "gateway_transaction_id": req.gateway_transaction_id,
                "notes": req.notes,
            })
            response = self._admin_detail(db, payment)

        logger.info(f"Payment reconciled | payment：{payment_id} | {previous_status} -> {req.status}")
        return response

    # 查询
    async def get_payment_status(self, user_id, payment_id) -> PaymentResponse:
        with UnitOfWork(self.session_factory) as uow:
            payment = PaymentRepository(uow.session, self.clock).get_by_id(payment_id)
            if not payment:
                raise PaymentNotFound()
            order = OrderRepository(uow.session, self.clock).get_by_id(payment.order_id)
            if not order or order.user_id != user_id:
                raise NotOwner()
            return PaymentResponse.model_validate(payment)

    async def list_user_payments(self, user_id, page: int = 1, limit: int = 10) -> PaymentListResponse:
        with UnitOfWork(self.session_factory) as uow:
            rows, total = PaymentRepository(uow.session, self.clock).list_by_user(user_id, page, limit)
            return self._list_response(rows, total, page, limit)

    async def admin_list_payments(self, status=None, gateway=None, page: int = 1, limit: int = 20) -> PaymentListResponse:
        with UnitOfWork(self.session_factory) as uow:
            rows, total = PaymentRepository(uow.session, self.clock).admin_list(status, gateway, page, limit)
            return self._list_response(rows, total, page, limit)

    async def admin_get_payment(self, payment_id) -> AdminPaymentDetailResponse:
        with UnitOfWork(self.session_factory) as uow:
            payment = PaymentRepository(uow.session, self.clock).get_by_id(payment_id)
            if not payment:
                raise PaymentNotFound()
            return self._admin_detail(uow.session, payment)

    def _admin_detail(self, db, payment: PaymentTransaction) -> AdminPaymentDetailResponse:
        logs = WebhookRepository(db, self.clock).list_by_payment(payment.id)
        detail = AdminPaymentDetailResponse.model_validate(payment)
        return detail.model_copy(update={"webhook_logs": [WebhookLogSummary.model_validate(log) for log in logs]})

    @staticmethod
    def _list_response(rows, total: int, page: int, limit: int) -> PaymentListResponse:
        return PaymentListResponse(
            payments=[PaymentResponse.model_validate(p) for p in rows],
            total=total,
            page=page,
            limit=limit,
            total_pages=ceil(total / limit) if total else 0,
        )
