from typing import Dict

from bookstore.gateways.base import PaymentGatewayPort
from bookstore.gateways.momo import MomoGateway
from bookstore.gateways.vnpay import VNPayGateway
from bookstore.utils.settings import Settings


def build_gateways(settings: Settings) -> Dict[str, PaymentGatewayPort]:
    """按配置构建跳转类网关（COD / 银行转账不需要网关）"""
    return {
        "vnpay": VNPayGateway(settings.vnpay, timeout=settings.gateway_timeout_seconds),
        "momo": MomoGateway(settings.momo, timeout=settings.gateway_timeout_seconds),
    }
