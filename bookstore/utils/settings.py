import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, FrozenSet, Optional

from dotenv import load_dotenv

# 加载环境变量
load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_decimal(name: str, default: str) -> Decimal:
    value = os.getenv(name)
    return Decimal(value if value not in (None, "") else default)


# 省份 -> 默认仓库编码
PROVINCE_WAREHOUSE_MAP: Dict[str, str] = {
    "Hà Nội": "WH-HN-01",
    "TP. Hồ Chí Minh": "WH-HCM-01",
    "TP.HCM": "WH-HCM-01",
    "Hồ Chí Minh": "WH-HCM-01",
    "Đà Nẵng": "WH-DN-01",
    "Cần Thơ": "WH-CT-01",
}


@dataclass(frozen=True)
class GatewayConfig:
    """单个支付网关的配置"""
    name: str
    partner_code: str = ""
    access_key: str = ""
    secret_key: str = ""
    api_url: str = ""
    return_url: str = ""
    ipn_url: str = ""
    version: str = ""
    command: str = ""
    currency: str = "VND"
    locale: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.partner_code and self.secret_key and self.api_url)


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./bookstore.db"
    currency: str = "VND"
    shipping_fee: Decimal = Decimal("15000")
    cod_fee: Decimal = Decimal("15000")
    tax_rate: Decimal = Decimal("0")
    payment_timeout_minutes: int = 15
    max_payment_retries: int = 3
    refund_window_days: int = 7
    auto_release_minutes: int = 15
    default_warehouse_code: str = "WH-HN-01"
    gateway_timeout_seconds: int = 30
    expire_sweep_batch: int = 100
    webhook_retry_batch: int = 50
    webhook_max_retries: int = 5
    jwt_secret_key: str = "default_secret_key"
    admin_user_ids: FrozenSet[str] = frozenset()
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"
    redis_url: str = "redis://localhost:6379/2"
    log_level: str = "INFO"
    log_dir: str = "logs"
    province_warehouses: Dict[str, str] = field(default_factory=lambda: dict(PROVINCE_WAREHOUSE_MAP))
    vnpay: GatewayConfig = field(default_factory=lambda: GatewayConfig(name="vnpay"))
    momo: GatewayConfig = field(default_factory=lambda: GatewayConfig(name="momo"))

    def warehouse_code_for_province(self, province: Optional[str]) -> str:
        if province:
            code = self.province_warehouses.get(province.strip())
            if code:
                return code
        return self.default_warehouse_code


def _gateway_from_env(prefix: str, **defaults) -> GatewayConfig:
    def get(key: str) -> str:
        return os.getenv(f"{prefix}_{key.upper()}", defaults.get(key, ""))

    return GatewayConfig(
        name=prefix.lower(),
        partner_code=get("partner_code"),
        access_key=get("access_key"),
        secret_key=get("secret_key"),
        api_url=get("api_url"),
        return_url=get("return_url"),
        ipn_url=get("ipn_url"),
        version=get("version"),
        command=get("command"),
        currency=get("currency") or "VND",
        locale=get("locale"),
    )


def load_settings() -> Settings:
    """从环境变量构建只读配置"""
    admin_ids = os.getenv("ADMIN_USER_IDS", "")
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./bookstore.db"),
        currency=os.getenv("CURRENCY", "VND"),
        shipping_fee=_env_decimal("SHIPPING_FEE", "15000"),
        cod_fee=_env_decimal("COD_FEE", "15000"),
        tax_rate=_env_decimal("TAX_RATE", "0"),
        payment_timeout_minutes=_env_int("PAYMENT_TIMEOUT_MINUTES", 15),
        max_payment_retries=_env_int("MAX_PAYMENT_RETRIES", 3),
        refund_window_days=_env_int("REFUND_WINDOW_DAYS", 7),
        auto_release_minutes=_env_int("AUTO_RELEASE_MINUTES", 15),
        default_warehouse_code=os.getenv("DEFAULT_WAREHOUSE_CODE", "WH-HN-01"),
        gateway_timeout_seconds=_env_int("GATEWAY_TIMEOUT_SECONDS", 30),
        expire_sweep_batch=_env_int("EXPIRE_SWEEP_BATCH", 100),
        webhook_retry_batch=_env_int("WEBHOOK_RETRY_BATCH", 50),
        webhook_max_retries=_env_int("WEBHOOK_MAX_RETRIES", 5),
        jwt_secret_key=os.getenv("JWT_SECRET_KEY", "default_secret_key"),
        admin_user_ids=frozenset(x.strip() for x in admin_ids.split(",") if x.strip()),
        celery_broker_url=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
        celery_result_backend=os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1"),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/2"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_dir=os.getenv("LOG_DIR", "logs"),
        vnpay=_gateway_from_env(
            "VNPAY",
            version="2.1.0",
            command="pay",
            locale="vn",
            api_url="https://sandbox.vnpayment.vn/paymentv2",
        ),
        momo=_gateway_from_env(
            "MOMO",
            command="captureWallet",
            locale="vi",
            api_url="https://test-payment.momo.vn",
        ),
    )


settings = load_settings()
