import pytest
import json
from datetime import datetime
from decimal import Decimal

import httpx

from bookstore.gateways.base import EVENT_PAYMENT_FAILED, EVENT_PAYMENT_SUCCESS, WebhookPayload
from bookstore.gateways.momo import MomoGateway, hmac_sha256
from bookstore.gateways.vnpay import VNPayGateway, VN_TZ, hmac_sha512
from bookstore.utils.errors import GatewayTimeout, OTPExpired, RefundFailed, TransactionCancelled
from bookstore.utils.settings import GatewayConfig

VNPAY = GatewayConfig(
    name="vnpay",
    partner_code="TESTTMN1",
    secret_key="vnpay-secret",
    api_url="https://sandbox.vnpayment.vn/paymentv2",
    return_url="https://shop.local/payment/return",
    version="2.1.0",
    command="pay",
)
MOMO = GatewayConfig(
    name="momo",
    partner_code="MOMOTEST",
    access_key="momo-access",
    secret_key="momo-secret",
    api_url="https://test-payment.momo.vn",
    return_url="https://shop.local/payment/return",
    ipn_url="https://shop.local/webhooks/momo",
)
FIXED_NOW = datetime(2026, 3, 10, 16, 0, 0, tzinfo=VN_TZ)


def vnpay(transport=None):
    return VNPayGateway(VNPAY, transport=transport, clock=lambda: FIXED_NOW)


def vnpay_callback(gateway, **overrides):
    params = {
        "vnp_Amount": "21500000",
        "vnp_BankCode": "NCB",
        "vnp_ResponseCode": "00",
        "vnp_TransactionStatus": "00",
        "vnp_TmnCode": "TESTTMN1",
        "vnp_TransactionNo": "14123456",
        "vnp_TxnRef": "5b0e5a2e-7a4e-4b8e-9d3c-0d9f3f0c1a11",
        "vnp_OrderInfo": "ORD20260310001",
    }
    params.update(overrides)
    params["vnp_SecureHash"] = gateway.sign(params)
    return params


class TestVNPay:
    @pytest.mark.asyncio
    async def test_payment_url_is_signed(self):
        gateway = vnpay()
        url = await gateway.create_payment_url("ref-1", Decimal("215.00"), "ORD20260310001", client_ip="::1")

        base, query = url.split("?", 1)
        assert base == "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
        params = dict(part.split("=", 1) for part in query.split("&"))
        assert params["vnp_Amount"] == "21500"
        assert params["vnp_IpAddr"] == "127.0.0.1"
        assert params["vnp_CreateDate"] == "20260310160000"
        assert params["vnp_ExpireDate"] == "20260310163000"
        signed_part = query.rsplit("&vnp_SecureHash=", 1)[0]
        assert params["vnp_SecureHash"] == hmac_sha512("vnpay-secret", signed_part)

    def test_callback_signature(self):
        gateway = vnpay()
        body = vnpay_callback(gateway)
        assert gateway.verify_signature(body)

        body["vnp_Amount"] = "100"
        assert not gateway.verify_signature(body)
        assert not gateway.verify_signature({"vnp_TxnRef": "x"})

    def test_parse_success(self):
        gateway = vnpay()
        payload = gateway.parse_webhook(vnpay_callback(gateway))

        assert payload.event == EVENT_PAYMENT_SUCCESS
        assert payload.success is True
        assert payload.amount == Decimal("215000")
        assert payload.gateway_txn_id == "14123456"
        assert payload.details["bank_code"] == "NCB"
        assert "vnp_SecureHash" in payload.raw

    def test_parse_failure_and_mapping(self):
        gateway = vnpay()
        payload = gateway.parse_webhook(vnpay_callback(gateway, vnp_ResponseCode="24", vnp_TransactionStatus="02"))

        assert payload.event == EVENT_PAYMENT_FAILED
        assert gateway.map_failure("24")[0] is TransactionCancelled
        assert gateway.map_failure("11")[0] is OTPExpired
        assert gateway.map_failure("09") is None

    def test_parse_rejects_non_numeric_amount(self):
        gateway = vnpay()
        with pytest.raises(ValueError):
            gateway.parse_webhook(vnpay_callback(gateway, vnp_Amount="12x"))
        with pytest.raises(ValueError):
            gateway.parse_webhook(vnpay_callback(gateway, vnp_Amount="NaN"))
        assert gateway.parse_webhook(vnpay_callback(gateway, vnp_Amount="")).amount is None

    def test_acknowledge(self):
        gateway = vnpay()
        assert gateway.acknowledge(True) == {"RspCode": "00", "Message": "Confirm Success"}
        assert gateway.acknowledge(False)["RspCode"] == "97"

    @pytest.mark.asyncio
    async def test_refund_request(self):
        captured = {}

        def handler(request: httpx.Request):
            captured["url"] = str(request.url)
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"vnp_ResponseCode": "00", "vnp_Message": "OK"})

        gateway = vnpay(httpx.MockTransport(handler))
        result = await gateway.initiate_refund("14123456", None, Decimal("215"), Decimal("215"), "Damaged", "ref-1")

        assert result.refund_id == "RF20260310160000"
        assert captured["url"].endswith("/merchant_webapi/api/transaction")
        assert captured["body"]["vnp_Amount"] == 21500
        assert captured["body"]["vnp_TransactionType"] == "02"
        assert captured["body"]["vnp_TxnRef"] == "ref-1"
        assert captured["body"]["vnp_SecureHash"]

    @pytest.mark.asyncio
    async def test_refund_rejected(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"vnp_ResponseCode": "94", "vnp_Message": "Duplicate"}))
        with pytest.raises(RefundFailed) as exc_info:
            await vnpay(transport).initiate_refund("14123456", None, Decimal("215"), Decimal("215"), "Damaged")
        assert exc_info.value.details["gateway_code"] == "94"

    @pytest.mark.asyncio
    async def test_refund_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GatewayTimeout):
            await vnpay(httpx.MockTransport(handler)).initiate_refund("14123456", None, Decimal("215"), Decimal("215"), "x")


class TestMomo:
    def test_callback_signature(self):
        gateway = MomoGateway(MOMO)
        body = {
            "partnerCode": "MOMOTEST", "orderId": "ref-1", "requestId": "req-1", "amount": 215000,
            "orderInfo": "ORD20260310001", "orderType": "momo_wallet", "transId": 2800000000,
            "resultCode": 0, "message": "Successful.", "payType": "qr", "responseTime": 1773133200000,
            "extraData": "",
        }
        body["signature"] = hmac_sha256("momo-secret", gateway.webhook_raw_signature(body))

        assert gateway.verify_signature(body)
        payload = gateway.parse_webhook(body)
        assert payload.success is True
        assert payload.gateway_txn_id == "2800000000"
        assert payload.amount == Decimal("215000")

        body["amount"] = 1
        assert not gateway.verify_signature(body)

    @pytest.mark.asyncio
    async def test_create_payment_url(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["amount"] == 215000
            assert body["orderId"] == "ref-1"
            return httpx.Response(200, json={"resultCode": 0, "payUrl": "https://test-payment.momo.vn/pay/abc"})

        gateway = MomoGateway(MOMO, transport=httpx.MockTransport(handler))
        url = await gateway.create_payment_url("ref-1", Decimal("215000"), "ORD20260310001")
        assert url == "https://test-payment.momo.vn/pay/abc"

    def test_failure_mapping(self):
        gateway = MomoGateway(MOMO)
        assert gateway.map_failure("9000")[0] is TransactionCancelled


def test_idempotency_key_falls_back_to_reference():
    payload = WebhookPayload(gateway="vnpay", event=EVENT_PAYMENT_FAILED, transaction_ref="ref-1", gateway_txn_id="0", success=False)
    assert payload.idempotency_key == "ref-1"
    payload.gateway_txn_id = "14123456"
    assert payload.idempotency_key == "14123456"
