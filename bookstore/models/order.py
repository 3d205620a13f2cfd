from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Enum, Text, Date, Uuid, JSON, Index
from sqlalchemy.orm import relationship
from bookstore.models.base import Base
from bookstore.utils.clock import utcnow
import enum
import uuid


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPING = "shipping"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class PaymentMethod(str, enum.Enum):
    COD = "cod"
    VNPAY = "vnpay"
    MOMO = "momo"
    BANK_TRANSFER = "bank_transfer"


class OrderPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


# 允许的状态流转
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPING, OrderStatus.CANCELLED},
    OrderStatus.SHIPPING: {OrderStatus.DELIVERED, OrderStatus.RETURNED},
    OrderStatus.DELIVERED: {OrderStatus.RETURNED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.RETURNED: set(),
}

CANCELLABLE_STATUSES = {OrderStatus.PENDING, OrderStatus.CONFIRMED}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return OrderStatus(target) in ALLOWED_TRANSITIONS.get(OrderStatus(current), set())


def _enum(enum_cls, name):
    return Enum(enum_cls, name=name, values_callable=lambda x: [e.value for e in x], native_enum=False, length=20)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number = Column(String(32), unique=True, index=True, nullable=False)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    address_id = Column(Uuid, ForeignKey("addresses.id"), nullable=False)
    promotion_id = Column(Uuid, ForeignKey("promotions.id"), nullable=True)
    warehouse_id = Column(Uuid, ForeignKey("warehouses.id"), nullable=True)

    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping_fee = Column(Numeric(12, 2), nullable=False, default=0)
    cod_fee = Column(Numeric(12, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False)

    payment_method = Column(_enum(PaymentMethod, "payment_method"), nullable=False)
    payment_status = Column(_enum(OrderPaymentStatus, "order_payment_status"), nullable=False, default=OrderPaymentStatus.PENDING)
    paid_at = Column(DateTime, nullable=True)
    status = Column(_enum(OrderStatus, "order_status"), nullable=False, default=OrderStatus.PENDING, index=True)

    tracking_number = Column(String(100), nullable=True)
    estimated_delivery_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    customer_note = Column(Text, nullable=True)
    admin_note = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    cancelled_at = Column(DateTime, nullable=True)

    # 关联
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.created_at")
    status_history = relationship("OrderStatusHistory", back_populates="order", order_by="OrderStatusHistory.created_at")

    @property
    def can_be_cancelled(self) -> bool:
        return OrderStatus(self.status) in CANCELLABLE_STATUSES


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    book_id = Column(Uuid, ForeignKey("books.id"), nullable=False, index=True)
    warehouse_id = Column(Uuid, ForeignKey("warehouses.id"), nullable=True)

    # 下单时的快照，创建后不再修改
    book_title = Column(String(500), nullable=False)
    book_slug = Column(String(500), nullable=False)
    book_cover_url = Column(Text, nullable=True)
    author_name = Column(String(255), nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    order = relationship("Order", back_populates="items")


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    changed_by = Column(Uuid, nullable=True)  # 为空表示系统操作
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    order = relationship("Order", back_populates="status_history")


class OrderNumberSequence(Base):
    """按天递增的订单号计数器"""
    __tablename__ = "order_number_sequences"

    day = Column(Date, primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


class AdminAuditLog(Base):
    __tablename__ = "admin_audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id = Column(Uuid, nullable=True)
    action = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Uuid, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_admin_audit_entity", "entity_type", "entity_id"),
    )
