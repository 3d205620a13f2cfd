from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Enum, Text, Boolean, Uuid, JSON, Index, text
from bookstore.models.base import Base
from bookstore.utils.clock import utcnow
import enum
import uuid


class PaymentGateway(str, enum.Enum):
    COD = "cod"
    VNPAY = "vnpay"
    MOMO = "momo"
    BANK_TRANSFER = "bank_transfer"


# 需要跳转到网关页面的支付方式
REDIRECT_GATEWAYS = {PaymentGateway.VNPAY, PaymentGateway.MOMO}


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


OPEN_REFUND_STATUSES = {RefundStatus.PENDING, RefundStatus.APPROVED, RefundStatus.PROCESSING}


class WebhookEvent(str, enum.Enum):
    PAYMENT_SUCCESS = "payment.success"
    PAYMENT_FAILED = "payment.failed"
    REFUND_SUCCESS = "refund.success"
    REFUND_FAILED = "refund.failed"


def _enum(enum_cls, name):
    return Enum(enum_cls, name=name, values_callable=lambda x: [e.value for e in x], native_enum=False, length=20)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    # id 同时作为提交给网关的交易参考号
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    gateway = Column(_enum(PaymentGateway, "payment_gateway"), nullable=False)
    transaction_id = Column(String(100), nullable=True)  # 网关侧交易号
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="VND")
    status = Column(_enum(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.PENDING, index=True)
    error_code = Column(String(20), nullable=True)
    error_message = Column(Text, nullable=True)
    gateway_response = Column(JSON, nullable=True)
    gateway_signature = Column(Text, nullable=True)
    payment_details = Column(JSON, nullable=True)
    payment_url = Column(Text, nullable=True)
    refund_amount = Column(Numeric(12, 2), nullable=False, default=0)
    refund_reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    initiated_at = Column(DateTime, nullable=False, default=utcnow)
    processing_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # 每个订单最多一笔成功支付
        Index(
            "uq_payment_success_per_order", "order_id", unique=True,
            sqlite_where=text("status = 'success'"),
            postgresql_where=text("status = 'success'"),
        ),
    )

    def can_be_refunded(self) -> bool:
        if PaymentGateway(self.gateway) == PaymentGateway.COD:
            return False
        if PaymentStatus(self.status) != PaymentStatus.SUCCESS:
            return False
        return (self.refund_amount or 0) < self.amount


class PaymentWebhookLog(Base):
    __tablename__ = "payment_webhook_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_transaction_id = Column(Uuid, ForeignKey("payment_transactions.id"), nullable=True, index=True)
    order_id = Column(Uuid, nullable=True)
    gateway = Column(String(20), nullable=False)
    webhook_event = Column(String(50), nullable=True)
    gateway_transaction_id = Column(String(100), nullable=True)
    headers = Column(JSON, nullable=True)
    body = Column(JSON, nullable=False)
    signature = Column(Text, nullable=True)
    is_valid = Column(Boolean, nullable=True)
    is_processed = Column(Boolean, nullable=False, default=False)
    is_duplicate = Column(Boolean, nullable=False, default=False)
    processing_error = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    received_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        # 幂等：同一 (网关, 事件, 网关交易号) 只允许一条已处理记录
        Index(
            "uq_webhook_processed", "gateway", "webhook_event", "gateway_transaction_id", unique=True,
            sqlite_where=text("is_processed = 1"),
            postgresql_where=text("is_processed"),
        ),
    )


class RefundRequest(Base):
    __tablename__ = "refund_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_transaction_id = Column(Uuid, ForeignKey("payment_transactions.id"), nullable=False, index=True)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    requested_by = Column(Uuid, nullable=False)
    requested_amount = Column(Numeric(12, 2), nullable=False)
    reason = Column(Text, nullable=False)
    proof_images = Column(JSON, nullable=True)
    status = Column(_enum(RefundStatus, "refund_status"), nullable=False, default=RefundStatus.PENDING, index=True)
    approved_by = Column(Uuid, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    admin_notes = Column(Text, nullable=True)
    rejected_by = Column(Uuid, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    gateway_refund_id = Column(String(100), nullable=True, index=True)
    gateway_refund_response = Column(JSON, nullable=True)
    requested_at = Column(DateTime, nullable=False, default=utcnow)
    processing_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def can_be_approved(self) -> bool:
        return RefundStatus(self.status) == RefundStatus.PENDING

    def can_be_rejected(self) -> bool:
        return RefundStatus(self.status) == RefundStatus.PENDING
