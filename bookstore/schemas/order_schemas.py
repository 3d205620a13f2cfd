from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from uuid import UUID
from bookstore.models.order import OrderStatus, PaymentMethod, OrderPaymentStatus


# 请求体模型
class CreateOrderRequest(BaseModel):
    address_id: Optional[UUID] = None
    payment_method: PaymentMethod
    promo_code: Optional[str] = Field(None, max_length=50)
    customer_note: Optional[str] = Field(None, max_length=1000)


class CancelOrderRequest(BaseModel):
    cancellation_reason: str = Field(..., min_length=1, max_length=500)
    version: int = Field(..., ge=1)


class ReorderRequest(BaseModel):
    order_id: UUID
    address_id: Optional[UUID] = None


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus
    version: int = Field(..., ge=1)
    tracking_number: Optional[str] = Field(None, max_length=100)
    admin_note: Optional[str] = Field(None, max_length=1000)


class OrderLine(BaseModel):
    """不经过购物车下单时的商品行"""
    book_id: UUID
    quantity: int = Field(..., ge=1)


# 响应体模型
class CreateOrderResponse(BaseModel):
    order_id: UUID
    order_number: str
    total: Decimal
    status: OrderStatus
    payment_method: PaymentMethod


class CancelOrderResponse(BaseModel):
    order_id: UUID
    status: OrderStatus
    version: int


class OrderItemResponse(BaseModel):
    id: UUID
    book_id: UUID
    book_title: str
    book_slug: str
    book_cover_url: Optional[str] = None
    author_name: Optional[str] = None
    price: Decimal
    quantity: int
    subtotal: Decimal

    class Config:
        from_attributes = True


class StatusHistoryResponse(BaseModel):
    from_status: Optional[str] = None
    to_status: str
    changed_by: Optional[UUID] = None
    notes: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AddressSummary(BaseModel):
    id: UUID
    recipient_name: str
    phone: str
    full_address: str


class OrderSummaryResponse(BaseModel):
    id: UUID
    order_number: str
    status: OrderStatus
    payment_method: PaymentMethod
    payment_status: OrderPaymentStatus
    total: Decimal
    items_count: int = 0
    version: int
    created_at: datetime

    class Config:
        from_attributes = True


class OrderDetailResponse(BaseModel):
    id: UUID
    order_number: str
    user_id: UUID
    status: OrderStatus
    payment_method: PaymentMethod
    payment_status: OrderPaymentStatus
    subtotal: Decimal
    shipping_fee: Decimal
    cod_fee: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total: Decimal
    warehouse_id: Optional[UUID] = None
    promotion_id: Optional[UUID] = None
    tracking_number: Optional[str] = None
    customer_note: Optional[str] = None
    admin_note: Optional[str] = None
    cancellation_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    version: int
    created_at: datetime
    updated_at: datetime
    address: Optional[AddressSummary] = None
    items: List[OrderItemResponse] = []
    status_history: List[StatusHistoryResponse] = []

    class Config:
        from_attributes = True


class OrderListResponse(BaseModel):
    orders: List[OrderSummaryResponse]
    total: int
    page: int
    limit: int
    total_pages: int
