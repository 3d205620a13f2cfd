import pytest
import uuid
from decimal import Decimal
from unittest.mock import patch

from bookstore.jobs.dispatcher import TASK_STOCK_RESYNC, SOURCE_ORDER_CANCELLED
from bookstore.gateways.vnpay import VNPayGateway
from bookstore.models.order import AdminAuditLog, Order, OrderPaymentStatus, OrderStatus
from bookstore.models.payment import PaymentStatus, PaymentTransaction, PaymentWebhookLog
from bookstore.schemas.order_schemas import CancelOrderRequest, CreateOrderRequest
from bookstore.schemas.payment_schemas import CreatePaymentRequest, ReconcileRequest
from bookstore.utils.errors import (
    GatewayUnavailable, InvalidGateway, InvalidRequest, InvalidSignature, NotOwner, OrderAlreadyPaid, OrderNotPending,
    RetryLimitExceeded, WebhookProcessingFailed,
)
from bookstore.utils.settings import GatewayConfig


async def vnpay_order(container, seed, method="vnpay"):
    return await container.order_service.create_order(seed.user_id, CreateOrderRequest(payment_method=method))


async def start_payment(container, seed, order_id, gateway="vnpay"):
    return await container.payment_service.create_payment(
        seed.user_id, CreatePaymentRequest(order_id=order_id, gateway=gateway)
    )


def success_body(gateway, payment_id, txn="VNP0001"):
    return gateway.signed(transaction_ref=str(payment_id), gateway_txn_id=txn, code="00", message="Success")


def failure_body(gateway, payment_id, code="24", txn=None):
    return gateway.signed(transaction_ref=str(payment_id), gateway_txn_id=txn or f"VNP-{uuid.uuid4().hex[:8]}", code=code)


@pytest.mark.asyncio
async def test_vnpay_checkout_and_successful_webhook(container, seed, gateways, session_factory, clock):
    """跳转支付 + 成功回调：支付成功、订单已支付并确认；重复回调不改变状态"""
    order = await vnpay_order(container, seed)
    assert order.status == OrderStatus.PENDING

    payment = await start_payment(container, seed, order.order_id)
    assert payment.status == PaymentStatus.PROCESSING
    assert payment.amount == Decimal("215")
    assert str(payment.payment_transaction_id) in payment.payment_url
    assert (payment.expires_at - clock.now).total_seconds() == 15 * 60

    body = success_body(gateways["vnpay"], payment.payment_transaction_id)
    result = await container.payment_service.process_webhook("vnpay", body)
    assert result["status"] == "processed"

    with session_factory() as db:
        attempt = db.get(PaymentTransaction, payment.payment_transaction_id)
        assert attempt.status == PaymentStatus.SUCCESS
        assert attempt.transaction_id == "VNP0001"
        stored = db.get(Order, order.order_id)
        assert stored.payment_status == OrderPaymentStatus.PAID
        assert stored.status == OrderStatus.CONFIRMED
        assert stored.paid_at == clock.now
        version = stored.version

    duplicate = await container.payment_service.process_webhook("vnpay", dict(body))
    assert duplicate["status"] == "duplicate"

    with session_factory() as db:
        assert db.get(Order, order.order_id).version == version
        logs = db.query(PaymentWebhookLog).all()
        assert len(logs) == 2
        assert sum(1 for log in logs if log.is_processed) == 1
        assert sum(1 for log in logs if log.is_duplicate) == 1


@pytest.mark.asyncio
async def test_invalid_signature_is_logged_and_rejected(container, seed, gateways, session_factory):
    order = await vnpay_order(container, seed)
    payment = await start_payment(container, seed, order.order_id)
    body = success_body(gateways["vnpay"], payment.payment_transaction_id)
    body["signature"] = "forged"

    with pytest.raises(InvalidSignature) as exc_info:
        await container.payment_service.process_webhook("vnpay", body)

    assert exc_info.value.status_code == 400
    with session_factory() as db:
        log = db.query(PaymentWebhookLog).one()
        assert log.is_valid is False
        assert log.is_processed is False
        assert db.get(PaymentTransaction, payment.payment_transaction_id).status == PaymentStatus.PROCESSING


@pytest.mark.asyncio
async def test_failed_webhook_marks_payment_failed(container, seed, gateways, session_factory):
    order = await vnpay_order(container, seed)
    payment = await start_payment(container, seed, order.order_id)

    await container.payment_service.process_webhook("vnpay", failure_body(gateways["vnpay"], payment.payment_transaction_id, "24"))

    with session_factory() as db:
        attempt = db.get(PaymentTransaction, payment.payment_transaction_id)
        assert attempt.status == PaymentStatus.FAILED
        assert attempt.error_code == "PAY020"
        stored = db.get(Order, order.order_id)
        assert stored.payment_status == OrderPaymentStatus.FAILED
        assert stored.status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_processing_code_keeps_payment_open(container, seed, gateways, session_factory):
    order = await vnpay_order(container, seed)
    payment = await start_payment(container, seed, order.order_id)

    await container.payment_service.process_webhook("vnpay", failure_body(gateways["vnpay"], payment.payment_transaction_id, "09"))

    with session_factory() as db:
        assert db.get(PaymentTransaction, payment.payment_transaction_id).status == PaymentStatus.PROCESSING


@pytest.mark.asyncio
async def test_retry_limit(container, seed, gateways):
    """失败 3 次后不允许再发起支付"""
    order = await vnpay_order(container, seed)
    for _ in range(3):
        payment = await start_payment(container, seed, order.order_id)
        await container.payment_service.process_webhook("vnpay", failure_body(gateways["vnpay"], payment.payment_transaction_id))

    with pytest.raises(RetryLimitExceeded):
        await start_payment(container, seed, order.order_id)


@pytest.mark.asyncio
async def test_new_attempt_supersedes_open_one(container, seed, session_factory):
    order = await vnpay_order(container, seed)
    first = await start_payment(container, seed, order.order_id)
    second = await start_payment(container, seed, order.order_id)

    with session_factory() as db:
        assert db.get(PaymentTransaction, first.payment_transaction_id).status == PaymentStatus.CANCELLED
        assert db.get(PaymentTransaction, second.payment_transaction_id).status == PaymentStatus.PROCESSING


@pytest.mark.asyncio
async def test_gateway_failure_marks_attempt_failed(container, seed, gateways, session_factory):
    gateways["vnpay"].fail_url = True
    order = await vnpay_order(container, seed)

    with pytest.raises(GatewayUnavailable):
        await start_payment(container, seed, order.order_id)

    with session_factory() as db:
        attempt = db.query(PaymentTransaction).one()
        assert attempt.status == PaymentStatus.FAILED
        assert attempt.error_code == "PAY016"


@pytest.mark.asyncio
async def test_gateway_must_match_payment_method(container, seed):
    cod_order = await vnpay_order(container, seed, method="cod")
    with pytest.raises(InvalidGateway):
        await start_payment(container, seed, cod_order.order_id, gateway="vnpay")


@pytest.mark.asyncio
async def test_cod_payment_is_registered_without_redirect(container, seed):
    cod_order = await vnpay_order(container, seed, method="cod")
    payment = await start_payment(container, seed, cod_order.order_id, gateway="cod")
    assert payment.status == PaymentStatus.PENDING
    assert payment.payment_url is None
    assert payment.message


@pytest.mark.asyncio
async def test_paid_order_cannot_be_paid_again(container, seed, gateways):
    order = await vnpay_order(container, seed)
    payment = await start_payment(container, seed, order.order_id)
    await container.payment_service.process_webhook("vnpay", success_body(gateways["vnpay"], payment.payment_transaction_id))

    with pytest.raises((OrderAlreadyPaid, OrderNotPending)):
        await start_payment(container, seed, order.order_id)


@pytest.mark.asyncio
async def test_payment_requires_order_owner(container, seed):
    order = await vnpay_order(container, seed)
    with pytest.raises(NotOwner):
        await container.payment_service.create_payment(
            seed.other_user_id, CreatePaymentRequest(order_id=order.order_id, gateway="vnpay")
        )


@pytest.mark.asyncio
async def test_expired_payment_sweep(container, seed, session_factory, dispatcher, clock, stock):
    """支付超时：取消支付、取消订单、释放库存并投递库存同步"""
    order = await vnpay_order(container, seed)
    payment = await start_payment(container, seed, order.order_id)
    dispatcher.clear()
    clock.advance(minutes=16)

    stats = await container.payment_service.cancel_expired()

    assert stats["cancelled_payments"] == 1
    assert stats["cancelled_orders"] == 1
    with session_factory() as db:
        assert db.get(PaymentTransaction, payment.payment_transaction_id).status == PaymentStatus.CANCELLED
        stored = db.get(Order, order.order_id)
        assert stored.status == OrderStatus.CANCELLED
        assert stored.cancellation_reason == "Payment timeout after 15 minutes"
    assert stock(seed.hn_warehouse_id, seed.book_id) == (10, 0)
    assert [job.payload["source"] for job in dispatcher.of(TASK_STOCK_RESYNC)] == [SOURCE_ORDER_CANCELLED]

    # 再次执行为空操作
    again = await container.payment_service.cancel_expired()
    assert again["expired"] == 0


@pytest.mark.asyncio
async def test_sweep_ignores_fresh_payments(container, seed):
    order = await vnpay_order(container, seed)
    await start_payment(container, seed, order.order_id)
    stats = await container.payment_service.cancel_expired()
    assert stats["expired"] == 0


@pytest.mark.asyncio
async def test_success_for_cancelled_order_is_flagged(container, seed, gateways, session_factory):
    """订单已取消后收到支付成功：记录支付，订单保持取消并写审计"""
    order = await vnpay_order(container, seed)
    payment = await start_payment(container, seed, order.order_id)
    await container.order_service.cancel_order(seed.user_id, order.order_id, CancelOrderRequest(cancellation_reason="x", version=1))

    await container.payment_service.process_webhook("vnpay", success_body(gateways["vnpay"], payment.payment_transaction_id))

    with session_factory() as db:
        stored = db.get(Order, order.order_id)
        assert stored.status == OrderStatus.CANCELLED
        assert stored.payment_status == OrderPaymentStatus.PAID
        audit = db.query(AdminAuditLog).filter(AdminAuditLog.action == "payment_success_on_cancelled_order").all()
        assert len(audit) == 1


@pytest.mark.asyncio
async def test_second_success_for_paid_order_is_rejected(container, seed, gateways, session_factory):
    """同一订单两笔支付都成功时，只保留一笔成功"""
    order = await vnpay_order(container, seed)
    first = await start_payment(container, seed, order.order_id)
    second = await start_payment(container, seed, order.order_id)
    gateway = gateways["vnpay"]

    await container.payment_service.process_webhook("vnpay", success_body(gateway, second.payment_transaction_id, "VNP-B"))
    await container.payment_service.process_webhook("vnpay", success_body(gateway, first.payment_transaction_id, "VNP-A"))

    with session_factory() as db:
        successes = db.query(PaymentTransaction).filter(PaymentTransaction.status == PaymentStatus.SUCCESS).all()
        assert [p.id for p in successes] == [second.payment_transaction_id]
        duplicate = db.get(PaymentTransaction, first.payment_transaction_id)
        assert duplicate.status == PaymentStatus.FAILED
        assert duplicate.error_code == "PAY002"


@pytest.mark.asyncio
async def test_failed_webhook_is_retried(container, seed, gateways, session_factory):
    order = await vnpay_order(container, seed)
    payment = await start_payment(container, seed, order.order_id)
    service = container.payment_service

    with patch.object(service, "_apply_payment_event", side_effect=RuntimeError("db hiccup")):
        with pytest.raises(WebhookProcessingFailed):
            await service.process_webhook("vnpay", success_body(gateways["vnpay"], payment.payment_transaction_id))

    with session_factory() as db:
        log = db.query(PaymentWebhookLog).one()
        assert "db hiccup" in log.processing_error
        assert log.is_processed is False

    stats = await service.retry_failed_webhooks()

    assert stats == {"retried": 1, "succeeded": 1, "errors": 0}
    with session_factory() as db:
        log = db.query(PaymentWebhookLog).one()
        assert log.is_processed is True
        assert log.processing_error is None
        assert db.get(Order, order.order_id).payment_status == OrderPaymentStatus.PAID


@pytest.mark.asyncio
async def test_admin_reconcile_success(container, seed, session_factory):
    order = await vnpay_order(container, seed)
    payment = await start_payment(container, seed, order.order_id)

    detail = await container.payment_service.admin_reconcile(
        seed.admin_id, payment.payment_transaction_id,
        ReconcileRequest(status="success", gateway_transaction_id="BANK-42", notes="Confirmed by bank statement"),
    )

    assert detail.status == PaymentStatus.SUCCESS
    assert detail.gateway_response["manual_reconciliation"] is True
    assert detail.gateway_response["reconciled_by"] == str(seed.admin_id)
    with session_factory() as db:
        assert db.get(Order, order.order_id).payment_status == OrderPaymentStatus.PAID
        audit = db.query(AdminAuditLog).filter(AdminAuditLog.action == "payment_reconcile").one()
        assert audit.admin_id == seed.admin_id


@pytest.mark.asyncio
async def test_admin_reconcile_failed(container, seed, session_factory):
    order = await vnpay_order(container, seed)
    payment = await start_payment(container, seed, order.order_id)

    detail = await container.payment_service.admin_reconcile(
        seed.admin_id, payment.payment_transaction_id, ReconcileRequest(status="failed", notes="No money received"),
    )

    assert detail.status == PaymentStatus.FAILED
    assert detail.error_message == "Manual reconciliation: No money received"


@pytest.mark.asyncio
async def test_payment_reads(container, seed, gateways):
    order = await vnpay_order(container, seed)
    payment = await start_payment(container, seed, order.order_id)
    await container.payment_service.process_webhook("vnpay", success_body(gateways["vnpay"], payment.payment_transaction_id))
    service = container.payment_service

    status = await service.get_payment_status(seed.user_id, payment.payment_transaction_id)
    assert status.status == PaymentStatus.SUCCESS
    with pytest.raises(NotOwner):
        await service.get_payment_status(seed.other_user_id, payment.payment_transaction_id)

    assert (await service.list_user_payments(seed.user_id)).total == 1
    assert (await service.admin_list_payments(status=PaymentStatus.SUCCESS)).total == 1
    detail = await service.admin_get_payment(payment.payment_transaction_id)
    assert len(detail.webhook_logs) == 1
    assert detail.webhook_logs[0].is_processed is True


def real_vnpay():
    return VNPayGateway(GatewayConfig(
        name="vnpay", partner_code="TESTTMN1", secret_key="vnpay-secret", api_url="https://sandbox.vnpayment.vn/paymentv2",
    ))


@pytest.mark.asyncio
async def test_unsigned_garbage_webhook_is_logged(container, gateways, session_factory):
    """金额非法且签名错误：按签名错误拒绝，日志仍然落库"""
    gateways["vnpay"] = real_vnpay()
    body = {"vnp_TxnRef": "abc", "vnp_Amount": "12x", "vnp_ResponseCode": "00", "vnp_SecureHash": "deadbeef"}

    with pytest.raises(InvalidSignature):
        await container.payment_service.process_webhook("vnpay", body)

    with session_factory() as db:
        log = db.query(PaymentWebhookLog).one()
        assert log.is_valid is False
        assert log.body["vnp_Amount"] == "12x"
        assert log.webhook_event is None


@pytest.mark.asyncio
async def test_malformed_signed_webhook_is_rejected(container, gateways, session_factory):
    gateway = real_vnpay()
    gateways["vnpay"] = gateway
    body = {"vnp_TxnRef": "abc", "vnp_Amount": "12x", "vnp_ResponseCode": "00", "vnp_TransactionNo": "1"}
    body["vnp_SecureHash"] = gateway.sign(body)

    with pytest.raises(InvalidRequest) as exc_info:
        await container.payment_service.process_webhook("vnpay", body)

    assert exc_info.value.status_code == 400
    with session_factory() as db:
        log = db.query(PaymentWebhookLog).one()
        assert log.is_valid is True
        assert log.is_processed is False
        assert log.processing_error.startswith("Malformed webhook body")

    # 重试时仍无法解析：累计重试次数，不会无限重试
    stats = await container.payment_service.retry_failed_webhooks()
    assert stats == {"retried": 1, "succeeded": 0, "errors": 1}
    with session_factory() as db:
        assert db.query(PaymentWebhookLog).one().retry_count == 1
