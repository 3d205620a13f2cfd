import hashlib
import hmac
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

from bookstore.gateways.base import (
    HttpGateway, WebhookPayload, RefundResult, FailureMapping, parse_amount, to_integer_amount,
    EVENT_PAYMENT_SUCCESS, EVENT_PAYMENT_FAILED,
)
from bookstore.utils.clock import utcnow
from bookstore.utils.errors import (
    GatewayTimeout, GatewayUnavailable, CardLocked, TransactionCancelled, InsufficientBalance,
    InvalidGateway, InvalidSignature, RefundFailed,
)

logger = logging.getLogger(__name__)

RESULT_CODE_MAP = {
    "9000": (TransactionCancelled, "Transaction cancelled by user"),
    "1001": (InsufficientBalance, "Insufficient account balance"),
    "1002": (GatewayTimeout, "Transaction rejected by issuer"),
    "1003": (GatewayUnavailable, "Transaction cancelled"),
    "1004": (InvalidGateway, "Amount exceeds payment limit"),
    "1005": (GatewayTimeout, "Payment URL or QR code expired"),
    "1006": (CardLocked, "User denied payment confirmation"),
    "4001": (InvalidSignature, "Invalid signature"),
}

WEBHOOK_SIGNATURE_FIELDS = (
    "amount", "extraData", "message", "orderId", "orderInfo", "orderType",
    "partnerCode", "payType", "requestId", "responseTime", "resultCode", "transId",
)


def hmac_sha256(key: str, data: str) -> str:
    return hmac.new(key.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()


class MomoGateway(HttpGateway):
    name = "momo"

    @property
    def create_url(self) -> str:
        return self.config.api_url.rstrip("/") + "/v2/gateway/api/create"

    @property
    def refund_url(self) -> str:
        return self.config.api_url.rstrip("/") + "/v2/gateway/api/refund"

    def webhook_raw_signature(self, body: Dict[str, Any]) -> str:
        parts = [f"accessKey={self.config.access_key}"]
        parts += [f"{k}={body.get(k, '')}" for k in WEBHOOK_SIGNATURE_FIELDS]
        return "&".join(parts)

    async def create_payment_url(
        self,
        transaction_ref: str,
        amount: Decimal,
        order_info: str,
        return_url: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> str:
        if not self.config.partner_code or not self.config.secret_key:
            raise GatewayUnavailable("Momo is not configured")

        request_id = str(uuid.uuid4())
        amount_value = to_integer_amount(amount)
        redirect_url = return_url or self.config.return_url
        request_type = self.config.command or "captureWallet"
        raw_signature = (
            f"accessKey={self.config.access_key}&amount={amount_value}&extraData="
            f"&ipnUrl={self.config.ipn_url}&orderId={transaction_ref}&orderInfo={order_info}"
            f"&partnerCode={self.config.partner_code}&redirectUrl={redirect_url}"
            f"&requestId={request_id}&requestType={request_type}"
        )
        payload = {
            "partnerCode": self.config.partner_code,
            "accessKey": self.config.access_key,
            "requestId": request_id,
            "amount": amount_value,
            "orderId": transaction_ref,
            "orderInfo": order_info,
            "redirectUrl": redirect_url,
            "ipnUrl": self.config.ipn_url,
            "extraData": "",
            "requestType": request_type,
            "lang": self.config.locale or "vi",
            "signature": hmac_sha256(self.config.secret_key, raw_signature),
        }
        response = await self._post_json(self.create_url, payload)
        result_code = str(response.get("resultCode"))
        if result_code != "0":
            logger.warning(f"Momo create payment rejected | ref：{transaction_ref} | code：{result_code} | message：{response.get('message')}")
            _, message = self.map_failure(result_code)
            raise GatewayUnavailable(response.get("message") or message, details={"gateway_code": result_code})
        return response["payUrl"]

    def verify_signature(self, body: Dict[str, Any]) -> bool:
        received = body.get("signature")
        if not received:
            return False
        expected = hmac_sha256(self.config.secret_key, self.webhook_raw_signature(body))
        return hmac.compare_digest(expected, str(received))

    def parse_webhook(self, body: Dict[str, Any]) -> WebhookPayload:
        result_code = str(body.get("resultCode", ""))
        success = result_code == "0"
        trans_id = body.get("transId")
        return WebhookPayload(
            gateway=self.name,
            event=EVENT_PAYMENT_SUCCESS if success else EVENT_PAYMENT_FAILED,
            transaction_ref=body.get("orderId"),
            gateway_txn_id=str(trans_id) if trans_id not in (None, "") else None,
            success=success,
            result_code=result_code,
            message=body.get("message"),
            amount=parse_amount(body.get("amount")),
            signature=body.get("signature"),
            details={
                "pay_type": body.get("payType"),
                "order_type": body.get("orderType"),
                "response_time": body.get("responseTime"),
            },
            raw=dict(body),
        )

    def map_failure(self, code: Optional[str]) -> FailureMapping:
        return RESULT_CODE_MAP.get(str(code), (GatewayUnavailable, "Unknown payment error"))

    async def initiate_refund(
        self,
        original_txn_id: str,
        original_date: Optional[datetime],
        original_amount: Decimal,
        refund_amount: Decimal,
        reason: str,
        transaction_ref: Optional[str] = None,
    ) -> RefundResult:
        refund_ref = f"RF{utcnow().strftime('%Y%m%d%H%M%S')}"
        request_id = str(uuid.uuid4())
        amount_value = to_integer_amount(refund_amount)
        description = reason or ""
        raw_signature = (
            f"accessKey={self.config.access_key}&amount={amount_value}&description={description}"
            f"&orderId={refund_ref}&partnerCode={self.config.partner_code}"
            f"&requestId={request_id}&transId={original_txn_id}"
        )
        payload = {
            "partnerCode": self.config.partner_code,
            "orderId": refund_ref,
            "requestId": request_id,
            "amount": amount_value,
            "transId": int(original_txn_id),
            "lang": self.config.locale or "vi",
            "description": description,
            "signature": hmac_sha256(self.config.secret_key, raw_signature),
        }
        response = await self._post_json(self.refund_url, payload)
        result_code = str(response.get("resultCode"))
        if result_code != "0":
            logger.warning(f"Momo refund rejected | txn：{original_txn_id} | code：{result_code}")
            raise RefundFailed(f"Momo refund failed: {response.get('message') or result_code}", details={"gateway_code": result_code})
        return RefundResult(refund_id=refund_ref, code=result_code, message=response.get("message", ""), raw=response)
