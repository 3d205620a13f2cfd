"""支付网关端口

每个网关实现负责签名、金额单位换算（如 VNPay 的 ×100）以及 HTTP 通信，
调用方只处理 Decimal 金额和统一的 WebhookPayload / RefundResult。
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional, Tuple, Type
import logging

import httpx

from bookstore.utils.errors import AppError, GatewayTimeout, GatewayUnavailable

logger = logging.getLogger(__name__)

EVENT_PAYMENT_SUCCESS = "payment.success"
EVENT_PAYMENT_FAILED = "payment.failed"
EVENT_REFUND_SUCCESS = "refund.success"
EVENT_REFUND_FAILED = "refund.failed"

# 网关返回码 -> (内部错误类型, 提示信息)；None 表示交易仍在处理中
FailureMapping = Optional[Tuple[Type[AppError], str]]


@dataclass
class WebhookPayload:
    gateway: str
    event: str
    transaction_ref: Optional[str]
    gateway_txn_id: Optional[str]
    success: bool
    result_code: Optional[str] = None
    message: Optional[str] = None
    amount: Optional[Decimal] = None
    signature: Optional[str] = None
    refund_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        """网关交易号缺失（或为 0）时退回使用交易参考号"""
        if self.gateway_txn_id and self.gateway_txn_id != "0":
            return self.gateway_txn_id
        return self.refund_id or self.transaction_ref or ""


@dataclass
class RefundResult:
    refund_id: str
    code: str
    message: str
    raw: Dict[str, Any] = field(default_factory=dict)


def to_integer_amount(amount: Decimal) -> int:
    return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_amount(raw, minor_units: int = 1) -> Optional[Decimal]:
    """回调中的金额字段；缺失返回 None，非数字或非有限值抛 ValueError"""
    if raw in (None, ""):
        return None
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        raise ValueError(f"Invalid amount {raw!r}")
    if not value.is_finite():
        raise ValueError(f"Invalid amount {raw!r}")
    return value / minor_units


class PaymentGatewayPort(ABC):
    name: str = ""
    redirect: bool = True

    @abstractmethod
    async def create_payment_url(
        self,
        transaction_ref: str,
        amount: Decimal,
        order_info: str,
        return_url: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> str:
        """返回跳转支付链接，失败时抛出 GatewayUnavailable"""

    @abstractmethod
    def verify_signature(self, body: Dict[str, Any]) -> bool:
        """校验回调签名"""

    @abstractmethod
    def parse_webhook(self, body: Dict[str, Any]) -> WebhookPayload:
        """把网关回调转换成统一结构"""

    @abstractmethod
    async def initiate_refund(
        self,
        original_txn_id: str,
        original_date: Optional[datetime],
        original_amount: Decimal,
        refund_amount: Decimal,
        reason: str,
        transaction_ref: Optional[str] = None,
    ) -> RefundResult:
        """向网关发起退款"""

    def map_failure(self, code: Optional[str]) -> FailureMapping:
        return GatewayUnavailable, "Unknown payment error"

    def acknowledge(self, success: bool = True) -> Dict[str, Any]:
        return {"status": "success" if success else "error"}


class HttpGateway(PaymentGatewayPort):
    """带 httpx 客户端的网关基类"""

    def __init__(self, config, timeout: int = 30, transport: httpx.AsyncBaseTransport = None):
        self.config = config
        self.timeout = timeout
        self.transport = transport

    async def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as e:
            logger.error(f"Gateway timeout | gateway：{self.name} | url：{url}")
            raise GatewayTimeout(cause=e)
        except httpx.HTTPError as e:
            logger.error(f"Gateway request failed | gateway：{self.name} | url：{url} | error：{str(e)}")
            raise GatewayUnavailable(cause=e)
        except ValueError as e:
            logger.error(f"Gateway returned invalid JSON | gateway：{self.name} | url：{url}")
            raise GatewayUnavailable("Invalid gateway response", cause=e)
