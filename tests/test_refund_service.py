import pytest
from decimal import Decimal

from bookstore.models.order import Order, OrderPaymentStatus, OrderStatus
from bookstore.models.payment import PaymentGateway, PaymentStatus, PaymentTransaction, RefundRequest, RefundStatus
from bookstore.schemas.order_schemas import CancelOrderRequest, CreateOrderRequest, UpdateOrderStatusRequest
from bookstore.schemas.payment_schemas import (
    ApproveRefundRequest, CreatePaymentRequest, RefundRequestBody, RejectRefundRequest,
)
from bookstore.utils.errors import (
    CODNoRefund, InvalidStatus, NotOwner, OrderCannotRefund, PaymentNotSuccessful, RefundAlreadyExists,
    RefundFailed, RefundNotFound, RefundWindowExpired,
)


async def paid_order(container, seed, gateways):
    """创建 vnpay 订单并通过回调完成支付"""
    order = await container.order_service.create_order(seed.user_id, CreateOrderRequest(payment_method="vnpay"))
    payment = await container.payment_service.create_payment(
        seed.user_id, CreatePaymentRequest(order_id=order.order_id, gateway="vnpay")
    )
    body = gateways["vnpay"].signed(
        transaction_ref=str(payment.payment_transaction_id), gateway_txn_id="VNP777", code="00"
    )
    await container.payment_service.process_webhook("vnpay", body)
    return order.order_id, payment.payment_transaction_id


async def deliver(container, seed, order_id, clock):
    # 支付成功后订单为 confirmed，version 为 2
    for version, status in enumerate(["processing", "shipping", "delivered"], start=2):
        await container.order_service.update_order_status(
            seed.admin_id, order_id, UpdateOrderStatusRequest(status=status, version=version)
        )


def body(reason="Damaged cover"):
    return RefundRequestBody(reason=reason)


@pytest.mark.asyncio
async def test_refund_window_after_delivery(container, seed, gateways, clock):
    """送达 6 天内可申请退款，超过 7 天拒绝"""
    order_id, payment_id = await paid_order(container, seed, gateways)
    await deliver(container, seed, order_id, clock)
    service = container.refund_service

    clock.advance(days=6)
    refund = await service.request_refund(seed.user_id, payment_id, body())
    assert refund.status == RefundStatus.PENDING
    assert refund.requested_amount == Decimal("215")
    assert refund.message.startswith("Refund request submitted")

    await service.reject(seed.admin_id, refund.id, RejectRefundRequest(reason="Need photos"))

    clock.advance(days=2)
    with pytest.raises(RefundWindowExpired):
        await service.request_refund(seed.user_id, payment_id, body())


@pytest.mark.asyncio
async def test_only_one_open_refund(container, seed, gateways):
    order_id, payment_id = await paid_order(container, seed, gateways)
    await container.order_service.cancel_by_system(order_id, "Out of stock at warehouse", "admin", allow_paid=True)
    service = container.refund_service

    await service.request_refund(seed.user_id, payment_id, body())
    with pytest.raises(RefundAlreadyExists):
        await service.request_refund(seed.user_id, payment_id, body())


@pytest.mark.asyncio
async def test_refund_requires_refundable_order(container, seed, gateways):
    _, payment_id = await paid_order(container, seed, gateways)
    with pytest.raises(OrderCannotRefund):
        await container.refund_service.request_refund(seed.user_id, payment_id, body())


@pytest.mark.asyncio
async def test_refund_requires_owner(container, seed, gateways):
    _, payment_id = await paid_order(container, seed, gateways)
    with pytest.raises(NotOwner):
        await container.refund_service.request_refund(seed.other_user_id, payment_id, body())


@pytest.mark.asyncio
async def test_cod_payment_cannot_be_refunded(container, seed):
    order = await container.order_service.create_order(seed.user_id, CreateOrderRequest(payment_method="cod"))
    payment = await container.payment_service.create_payment(
        seed.user_id, CreatePaymentRequest(order_id=order.order_id, gateway="cod")
    )
    with pytest.raises(CODNoRefund):
        await container.refund_service.request_refund(seed.user_id, payment.payment_transaction_id, body())


@pytest.mark.asyncio
async def test_unpaid_payment_cannot_be_refunded(container, seed):
    order = await container.order_service.create_order(seed.user_id, CreateOrderRequest(payment_method="vnpay"))
    payment = await container.payment_service.create_payment(
        seed.user_id, CreatePaymentRequest(order_id=order.order_id, gateway="vnpay")
    )
    with pytest.raises(PaymentNotSuccessful):
        await container.refund_service.request_refund(seed.user_id, payment.payment_transaction_id, body())


@pytest.mark.asyncio
async def test_approve_and_complete_refund(container, seed, gateways, session_factory):
    """审批后调用网关退款，退款回调完成后支付与订单标记为已退款"""
    order_id, payment_id = await paid_order(container, seed, gateways)
    await container.order_service.cancel_by_system(order_id, "Out of stock at warehouse", "admin", allow_paid=True)
    service = container.refund_service
    refund = await service.request_refund(seed.user_id, payment_id, body())

    approved = await service.approve(seed.admin_id, refund.id, ApproveRefundRequest(notes="ok"))

    assert approved.status == RefundStatus.PROCESSING
    assert approved.gateway_refund_id == "RF-MOCK-0001"
    assert gateways["vnpay"].refund_calls == [("VNP777", Decimal("215.00"), "Damaged cover")]

    webhook = gateways["vnpay"].signed(
        event="refund.success", refund_id="RF-MOCK-0001", gateway_txn_id="RF-MOCK-0001", transaction_ref=str(payment_id)
    )
    result = await container.payment_service.process_webhook("vnpay", webhook)
    assert result["status"] == "processed"

    with session_factory() as db:
        assert db.get(RefundRequest, refund.id).status == RefundStatus.COMPLETED
        payment = db.get(PaymentTransaction, payment_id)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refund_amount == Decimal("215")
        assert db.get(Order, order_id).payment_status == OrderPaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_refund_webhook_matches_refund_of_its_payment(container, seed, gateways, session_factory):
    """两笔退款的网关退款号相同时，按回调中的支付 ID 区分"""
    order_id, payment_id = await paid_order(container, seed, gateways)
    await container.order_service.cancel_by_system(order_id, "Out of stock at warehouse", "admin", allow_paid=True)
    refund = await container.refund_service.request_refund(seed.user_id, payment_id, body())
    await container.refund_service.approve(seed.admin_id, refund.id, ApproveRefundRequest())

    with session_factory() as db:
        other_payment = PaymentTransaction(
            order_id=order_id, gateway=PaymentGateway.VNPAY, amount=Decimal("100"), status=PaymentStatus.FAILED,
        )
        db.add(other_payment)
        db.flush()
        other_refund = RefundRequest(
            payment_transaction_id=other_payment.id, order_id=order_id, requested_by=seed.user_id,
            requested_amount=Decimal("100"), reason="Other", status=RefundStatus.PROCESSING,
            gateway_refund_id="RF-MOCK-0001",
        )
        db.add(other_refund)
        db.commit()
        other_refund_id = other_refund.id

    # 没有支付 ID 时无法判断属于哪一笔退款
    ambiguous = gateways["vnpay"].signed(event="refund.success", refund_id="RF-MOCK-0001", gateway_txn_id="RF-MOCK-0001")
    with pytest.raises(RefundNotFound):
        await container.payment_service.process_webhook("vnpay", ambiguous)

    webhook = gateways["vnpay"].signed(
        event="refund.success", refund_id="RF-MOCK-0001", gateway_txn_id="RF-MOCK-0001", transaction_ref=str(payment_id)
    )
    assert (await container.payment_service.process_webhook("vnpay", webhook))["status"] == "processed"

    with session_factory() as db:
        assert db.get(RefundRequest, refund.id).status == RefundStatus.COMPLETED
        assert db.get(RefundRequest, other_refund_id).status == RefundStatus.PROCESSING


@pytest.mark.asyncio
async def test_gateway_refund_failure(container, seed, gateways, session_factory):
    order_id, payment_id = await paid_order(container, seed, gateways)
    await container.order_service.cancel_by_system(order_id, "Fraud check", "admin", allow_paid=True)
    gateways["vnpay"].fail_refund = True
    refund = await container.refund_service.request_refund(seed.user_id, payment_id, body())

    with pytest.raises(RefundFailed):
        await container.refund_service.approve(seed.admin_id, refund.id, ApproveRefundRequest())

    with session_factory() as db:
        stored = db.get(RefundRequest, refund.id)
        assert stored.status == RefundStatus.FAILED
        assert stored.approved_by == seed.admin_id


@pytest.mark.asyncio
async def test_only_pending_refunds_can_be_decided(container, seed, gateways):
    order_id, payment_id = await paid_order(container, seed, gateways)
    await container.order_service.cancel_by_system(order_id, "Fraud check", "admin", allow_paid=True)
    service = container.refund_service
    refund = await service.request_refund(seed.user_id, payment_id, body())
    await service.reject(seed.admin_id, refund.id, RejectRefundRequest(reason="No proof"))

    with pytest.raises(InvalidStatus):
        await service.approve(seed.admin_id, refund.id, ApproveRefundRequest())
    with pytest.raises(InvalidStatus):
        await service.reject(seed.admin_id, refund.id, RejectRefundRequest(reason="again"))


@pytest.mark.asyncio
async def test_refund_reads(container, seed, gateways):
    order_id, payment_id = await paid_order(container, seed, gateways)
    await container.order_service.cancel_by_system(order_id, "Fraud check", "admin", allow_paid=True)
    service = container.refund_service
    refund = await service.request_refund(seed.user_id, payment_id, body())

    assert (await service.get_refund_status(seed.user_id, refund.id)).id == refund.id
    with pytest.raises(NotOwner):
        await service.get_refund_status(seed.other_user_id, refund.id)
    pending = await service.list_pending_refunds()
    assert pending.total == 1
    assert pending.refunds[0].id == refund.id
