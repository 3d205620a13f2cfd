from sqlalchemy import update
from sqlalchemy.orm import Session
from bookstore.models.inventory import InventoryRow, Warehouse
from bookstore.utils.clock import utcnow
from bookstore.utils.errors import InsufficientStock
from typing import List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


class InventoryRepository:
    """仓库库存（可用 / 预留）读写

    所有写操作都在调用方传入的会话事务中执行，回滚时一并撤销。
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, warehouse_id, book_id) -> Optional[InventoryRow]:
        return (
            self.db.query(InventoryRow)
            .filter(InventoryRow.warehouse_id == warehouse_id, InventoryRow.book_id == book_id)
            .first()
        )

    def reserve(self, warehouse_id, book_id, quantity: int, actor=None, reason: str = "order_reserve") -> None:
        """预留库存：单条语句在行锁内完成 available -= qty, reserved += qty"""
        if quantity <= 0:
            raise ValueError("Reserve quantity must be positive")

        result = self.db.execute(
            update(InventoryRow)
            .where(
                InventoryRow.warehouse_id == warehouse_id,
                InventoryRow.book_id == book_id,
                InventoryRow.available >= quantity,
            )
            .values(
                available=InventoryRow.available - quantity,
                reserved=InventoryRow.reserved + quantity,
                last_updated_by=actor,
                last_reason=reason,
                updated_at=utcnow(),
            )
        )
        if result.rowcount == 0:
            available = self.available(warehouse_id, book_id)
            logger.warning(
                f"Reserve failed | warehouse：{warehouse_id} | book：{book_id} | requested：{quantity} | available：{available}"
            )
            raise InsufficientStock(book_id=book_id, requested=quantity, available=available)

        logger.debug(f"Reserved stock | warehouse：{warehouse_id} | book：{book_id} | qty：{quantity}")

    def release(self, warehouse_id, book_id, quantity: int, actor=None, reason: str = "order_release") -> int:
        """释放预留库存，预留不足时按实际预留量释放，返回实际释放数量"""
        # 先写一次拿到行锁（SQLite 忽略 FOR UPDATE），再读取最新值
        touched = self.db.execute(
            update(InventoryRow)
            .where(InventoryRow.warehouse_id == warehouse_id, InventoryRow.book_id == book_id)
            .values(updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if touched.rowcount == 0:
            logger.warning(f"Release skipped, inventory row missing | warehouse：{warehouse_id} | book：{book_id}")
            return 0
        row = (
            self.db.query(InventoryRow)
            .filter(InventoryRow.warehouse_id == warehouse_id, InventoryRow.book_id == book_id)
            .populate_existing()
            .one()
        )

        released = min(quantity, row.reserved)
        if released < quantity:
            logger.warning(
                f"Release clamped | warehouse：{warehouse_id} | book：{book_id} | requested：{quantity} | reserved：{row.reserved}"
            )
        if released <= 0:
            return 0

        row.available += released
        row.reserved -= released
        row.last_updated_by = actor
        row.last_reason = reason
        row.updated_at = utcnow()
        self.db.flush()
        return released

    def available(self, warehouse_id, book_id) -> int:
        row = self.get(warehouse_id, book_id)
        return row.available if row else 0

    def check(self, warehouse_id, book_id, quantity: int) -> bool:
        return self.available(warehouse_id, book_id) >= quantity

    def find_stocked_warehouses(self, book_id, quantity: int) -> List[Tuple[Warehouse, int]]:
        """有足够库存的启用仓库及其可用数量"""
        rows = (
            self.db.query(Warehouse, InventoryRow.available)
            .join(InventoryRow, InventoryRow.warehouse_id == Warehouse.id)
            .filter(
                InventoryRow.book_id == book_id,
                InventoryRow.available >= quantity,
                Warehouse.is_active.is_(True),
            )
            .all()
        )
        return [(warehouse, available) for warehouse, available in rows]

    def snapshot(self, book_id) -> dict:
        """某本书在所有仓库的库存汇总，字段与库存缓存一致"""
        rows = (
            self.db.query(InventoryRow, Warehouse.code)
            .join(Warehouse, Warehouse.id == InventoryRow.warehouse_id)
            .filter(InventoryRow.book_id == book_id)
            .order_by(Warehouse.code)
            .all()
        )
        available = sum(row.available for row, _ in rows)
        reserved = sum(row.reserved for row, _ in rows)
        return {
            "book_id": str(book_id),
            "total_quantity": available + reserved,
            "total_reserved": reserved,
            "available": available,
            "warehouse_count": len(rows),
            "warehouses_with_stock": [code for row, code in rows if row.available > 0],
        }


class WarehouseRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, warehouse_id) -> Optional[Warehouse]:
        return self.db.query(Warehouse).filter(Warehouse.id == warehouse_id).first()

    def get_by_code(self, code: str) -> Optional[Warehouse]:
        return self.db.query(Warehouse).filter(Warehouse.code == code, Warehouse.is_active.is_(True)).first()

    def list_active(self) -> List[Warehouse]:
        return self.db.query(Warehouse).filter(Warehouse.is_active.is_(True)).order_by(Warehouse.id).all()
