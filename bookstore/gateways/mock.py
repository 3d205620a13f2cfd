import hashlib
import hmac
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from bookstore.gateways.base import (
    PaymentGatewayPort, WebhookPayload, RefundResult, FailureMapping, parse_amount,
    EVENT_PAYMENT_SUCCESS, EVENT_PAYMENT_FAILED, EVENT_REFUND_SUCCESS, EVENT_REFUND_FAILED,
)
from bookstore.gateways.vnpay import RESPONSE_CODE_MAP
from bookstore.utils.errors import GatewayUnavailable, RefundFailed


class MockGateway(PaymentGatewayPort):
    """测试用网关：签名为 HMAC-SHA256(secret, 排序后的 k=v)，行为可配置"""

    def __init__(self, name: str = "mock", secret: str = "mock-secret", fail_url: bool = False, fail_refund: bool = False):
        self.name = name
        self.secret = secret
        self.fail_url = fail_url
        self.fail_refund = fail_refund
        self.refund_calls = []
        self._refund_seq = 0

    def sign(self, body: Dict[str, Any]) -> str:
        data = "&".join(f"{k}={body[k]}" for k in sorted(body) if k != "signature" and body[k] is not None)
        return hmac.new(self.secret.encode(), data.encode(), hashlib.sha256).hexdigest()

    def signed(self, **body) -> Dict[str, Any]:
        body["signature"] = self.sign(body)
        return body

    async def create_payment_url(
        self,
        transaction_ref: str,
        amount: Decimal,
        order_info: str,
        return_url: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> str:
        if self.fail_url:
            raise GatewayUnavailable("Mock gateway unavailable")
        return f"https://mock-gateway.local/pay?ref={transaction_ref}&amount={amount}"

    def verify_signature(self, body: Dict[str, Any]) -> bool:
        received = body.get("signature")
        return bool(received) and hmac.compare_digest(self.sign(body), str(received))

    def parse_webhook(self, body: Dict[str, Any]) -> WebhookPayload:
        event = body.get("event")
        code = str(body.get("code", "00"))
        if event in (EVENT_REFUND_SUCCESS, EVENT_REFUND_FAILED):
            success = event == EVENT_REFUND_SUCCESS
        else:
            success = code == "00"
            event = EVENT_PAYMENT_SUCCESS if success else EVENT_PAYMENT_FAILED
        return WebhookPayload(
            gateway=self.name,
            event=event,
            transaction_ref=body.get("transaction_ref"),
            gateway_txn_id=body.get("gateway_txn_id"),
            success=success,
            result_code=code,
            message=body.get("message"),
            amount=parse_amount(body.get("amount")),
            signature=body.get("signature"),
            refund_id=body.get("refund_id"),
            details={"channel": "mock"},
            raw=dict(body),
        )

    def map_failure(self, code: Optional[str]) -> FailureMapping:
        if code == "09":
            return None
        return RESPONSE_CODE_MAP.get(code, (GatewayUnavailable, "Unknown payment error"))

    async def initiate_refund(
        self,
        original_txn_id: str,
        original_date: Optional[datetime],
        original_amount: Decimal,
        refund_amount: Decimal,
        reason: str,
        transaction_ref: Optional[str] = None,
    ) -> RefundResult:
        self.refund_calls.append((original_txn_id, refund_amount, reason))
        if self.fail_refund:
            raise RefundFailed("Mock refund rejected")
        self._refund_seq += 1
        refund_id = f"RF-MOCK-{self._refund_seq:04d}"
        return RefundResult(refund_id=refund_id, code="00", message="Refund accepted", raw={"refund_id": refund_id})
