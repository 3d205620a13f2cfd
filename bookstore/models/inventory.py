from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, Uuid, Float, UniqueConstraint, CheckConstraint
from bookstore.models.base import Base
from bookstore.utils.clock import utcnow
import uuid


class Warehouse(Base):
    __tablename__ = "warehouses"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(String(20), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    province = Column(String(100), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class InventoryRow(Base):
    __tablename__ = "inventory_rows"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    warehouse_id = Column(Uuid, ForeignKey("warehouses.id"), nullable=False)
    book_id = Column(Uuid, ForeignKey("books.id"), nullable=False, index=True)
    available = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    last_updated_by = Column(Uuid, nullable=True)
    last_reason = Column(String(100), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("warehouse_id", "book_id", name="uq_inventory_warehouse_book"),
        CheckConstraint("available >= 0", name="ck_inventory_available"),
        CheckConstraint("reserved >= 0", name="ck_inventory_reserved"),
    )
