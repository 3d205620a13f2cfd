from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime
from decimal import Decimal
from uuid import UUID
from bookstore.models.payment import PaymentGateway, PaymentStatus, RefundStatus


class CreatePaymentRequest(BaseModel):
    order_id: UUID
    gateway: PaymentGateway
    return_url: Optional[str] = Field(None, description="支付完成后的跳转URL，不传使用默认配置")


class CreatePaymentResponse(BaseModel):
    payment_transaction_id: UUID
    order_id: UUID
    gateway: PaymentGateway
    amount: Decimal
    currency: str
    status: PaymentStatus
    expires_at: datetime
    payment_url: Optional[str] = None
    message: Optional[str] = None


class PaymentResponse(BaseModel):
    id: UUID
    order_id: UUID
    gateway: PaymentGateway
    transaction_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: PaymentStatus
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    refund_amount: Decimal
    retry_count: int
    initiated_at: datetime
    processing_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WebhookLogSummary(BaseModel):
    id: UUID
    webhook_event: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    is_valid: Optional[bool] = None
    is_processed: bool
    is_duplicate: bool
    processing_error: Optional[str] = None
    received_at: datetime

    class Config:
        from_attributes = True


class AdminPaymentDetailResponse(PaymentResponse):
    gateway_response: Optional[Dict[str, Any]] = None
    payment_details: Optional[Dict[str, Any]] = None
    webhook_logs: List[WebhookLogSummary] = []


class PaymentListResponse(BaseModel):
    payments: List[PaymentResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class ReconcileRequest(BaseModel):
    status: Literal["success", "failed"]
    gateway_transaction_id: Optional[str] = Field(None, max_length=100)
    notes: str = Field(..., min_length=1, max_length=1000)


# 退款
class RefundRequestBody(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)
    proof_images: List[str] = []


class ApproveRefundRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class RejectRefundRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class RefundResponse(BaseModel):
    id: UUID
    payment_transaction_id: UUID
    order_id: UUID
    requested_amount: Decimal
    reason: str
    proof_images: Optional[List[str]] = None
    status: RefundStatus
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    requested_at: datetime
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    message: Optional[str] = None

    class Config:
        from_attributes = True


class RefundListResponse(BaseModel):
    refunds: List[RefundResponse]
    total: int
    page: int
    limit: int
    total_pages: int
