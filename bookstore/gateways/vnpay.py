import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import quote_plus
import logging

from bookstore.gateways.base import (
    HttpGateway, WebhookPayload, RefundResult, FailureMapping, parse_amount, to_integer_amount,
    EVENT_PAYMENT_SUCCESS, EVENT_PAYMENT_FAILED,
)
from bookstore.utils.errors import (
    GatewayTimeout, GatewayUnavailable, CardLocked, OTPExpired, TransactionCancelled,
    InsufficientBalance, RefundFailed,
)

logger = logging.getLogger(__name__)

# VNPay 使用越南时区（GMT+7）
VN_TZ = timezone(timedelta(hours=7))
DATE_FORMAT = "%Y%m%d%H%M%S"
HASH_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")
PROCESSING_CODE = "09"

RESPONSE_CODE_MAP = {
    "07": (GatewayTimeout, "Transaction timeout - please retry"),
    "79": (GatewayTimeout, "Transaction timeout - please retry"),
    "10": (CardLocked, "Card is locked or restricted"),
    "11": (OTPExpired, "OTP has expired"),
    "12": (CardLocked, "Card is locked"),
    "13": (OTPExpired, "Incorrect OTP entered too many times"),
    "24": (TransactionCancelled, "Transaction cancelled by user"),
    "51": (InsufficientBalance, "Insufficient account balance"),
    "65": (GatewayTimeout, "Bank account limit exceeded"),
    "75": (GatewayTimeout, "Bank is under maintenance"),
}


def hmac_sha512(key: str, data: str) -> str:
    return hmac.new(key.encode("utf-8"), data.encode("utf-8"), hashlib.sha512).hexdigest().upper()


def build_query(params: Dict[str, Any]) -> str:
    """按 key 排序、去掉空值与签名字段后 urlencode 拼接"""
    items = sorted(
        (k, str(v)) for k, v in params.items()
        if k not in HASH_FIELDS and v not in (None, "")
    )
    return "&".join(f"{quote_plus(k)}={quote_plus(v)}" for k, v in items)


class VNPayGateway(HttpGateway):
    name = "vnpay"

    def __init__(self, config, timeout: int = 30, transport=None, clock=None):
        super().__init__(config, timeout=timeout, transport=transport)
        self.clock = clock or (lambda: datetime.now(VN_TZ))

    @property
    def payment_url(self) -> str:
        return self.config.api_url.rstrip("/") + "/vpcpay.html"

    @property
    def refund_url(self) -> str:
        return self.config.api_url.rstrip("/") + "/merchant_webapi/api/transaction"

    def sign(self, params: Dict[str, Any]) -> str:
        return hmac_sha512(self.config.secret_key, build_query(params))

    async def create_payment_url(
        self,
        transaction_ref: str,
        amount: Decimal,
        order_info: str,
        return_url: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> str:
        if not self.config.partner_code or not self.config.secret_key:
            raise GatewayUnavailable("VNPay is not configured")

        now = self.clock()
        ip = client_ip or "127.0.0.1"
        if ip == "::1":
            ip = "127.0.0.1"

        params = {
            "vnp_Version": self.config.version or "2.1.0",
            "vnp_Command": self.config.command or "pay",
            "vnp_TmnCode": self.config.partner_code,
            "vnp_Amount": to_integer_amount(amount) * 100,
            "vnp_CurrCode": self.config.currency or "VND",
            "vnp_TxnRef": transaction_ref,
            "vnp_OrderInfo": order_info,
            "vnp_OrderType": "other",
            "vnp_Locale": self.config.locale or "vn",
            "vnp_ReturnUrl": return_url or self.config.return_url,
            "vnp_IpAddr": ip,
            "vnp_CreateDate": now.strftime(DATE_FORMAT),
            "vnp_ExpireDate": (now + timedelta(minutes=30)).strftime(DATE_FORMAT),
        }
        query = build_query(params)
        secure_hash = hmac_sha512(self.config.secret_key, query)
        return f"{self.payment_url}?{query}&vnp_SecureHash={secure_hash}"

    def verify_signature(self, body: Dict[str, Any]) -> bool:
        received = body.get("vnp_SecureHash")
        if not received:
            return False
        fields = {k: v for k, v in body.items() if k.startswith("vnp_")}
        expected = self.sign(fields)
        return hmac.compare_digest(expected.upper(), str(received).upper())

    def parse_webhook(self, body: Dict[str, Any]) -> WebhookPayload:
        response_code = body.get("vnp_ResponseCode")
        transaction_status = body.get("vnp_TransactionStatus")
        success = response_code == "00" and transaction_status in (None, "", "00")
        return WebhookPayload(
            gateway=self.name,
            event=EVENT_PAYMENT_SUCCESS if success else EVENT_PAYMENT_FAILED,
            transaction_ref=body.get("vnp_TxnRef"),
            gateway_txn_id=body.get("vnp_TransactionNo"),
            success=success,
            result_code=response_code,
            message=body.get("vnp_Message"),
            amount=parse_amount(body.get("vnp_Amount"), minor_units=100),
            signature=body.get("vnp_SecureHash"),
            details={
                "bank_code": body.get("vnp_BankCode"),
                "card_type": body.get("vnp_CardType"),
                "pay_date": body.get("vnp_PayDate"),
                "bank_tran_no": body.get("vnp_BankTranNo"),
            },
            raw={k: v for k, v in body.items() if k.startswith("vnp_")},
        )

    def map_failure(self, code: Optional[str]) -> FailureMapping:
        if code == PROCESSING_CODE:
            return None
        return RESPONSE_CODE_MAP.get(code, (GatewayUnavailable, "Unknown payment error"))

    def acknowledge(self, success: bool = True) -> Dict[str, Any]:
        if success:
            return {"RspCode": "00", "Message": "Confirm Success"}
        return {"RspCode": "97", "Message": "Invalid Checksum"}

    async def initiate_refund(
        self,
        original_txn_id: str,
        original_date: Optional[datetime],
        original_amount: Decimal,
        refund_amount: Decimal,
        reason: str,
        transaction_ref: Optional[str] = None,
    ) -> RefundResult:
        now = self.clock()
        stamp = now.strftime(DATE_FORMAT)
        refund_ref = f"RF{stamp}"
        txn_date = (original_date or now).strftime(DATE_FORMAT)

        payload = {
            "vnp_RequestId": f"REQ{stamp}",
            "vnp_Version": self.config.version or "2.1.0",
            "vnp_Command": "refund",
            "vnp_TmnCode": self.config.partner_code,
            "vnp_TransactionType": "02",  # 全额退款
            "vnp_TxnRef": transaction_ref or original_txn_id,
            "vnp_Amount": to_integer_amount(refund_amount) * 100,
            "vnp_TransactionNo": original_txn_id,
            "vnp_TransactionDate": txn_date,
            "vnp_CreateBy": "admin",
            "vnp_CreateDate": stamp,
            "vnp_IpAddr": "127.0.0.1",
            "vnp_OrderInfo": f"Hoan tien GD {original_txn_id}",
        }
        sign_data = "|".join(str(payload[k]) for k in (
            "vnp_RequestId", "vnp_Version", "vnp_Command", "vnp_TmnCode", "vnp_TransactionType",
            "vnp_TxnRef", "vnp_Amount", "vnp_TransactionNo", "vnp_TransactionDate", "vnp_CreateBy",
            "vnp_CreateDate", "vnp_IpAddr", "vnp_OrderInfo",
        ))
        payload["vnp_SecureHash"] = hmac_sha512(self.config.secret_key, sign_data)

        logger.info(f"VNPay refund request | txn：{original_txn_id} | ref：{refund_ref} | amount：{refund_amount} | reason：{reason}")
        response = await self._post_json(self.refund_url, payload)
        code = str(response.get("vnp_ResponseCode", ""))
        message = response.get("vnp_Message", "")
        if code != "00":
            logger.warning(f"VNPay refund rejected | txn：{original_txn_id} | code：{code} | message：{message}")
            raise RefundFailed(f"VNPay refund failed: {message or code}", details={"gateway_code": code})
        return RefundResult(refund_id=refund_ref, code=code, message=message, raw=response)
