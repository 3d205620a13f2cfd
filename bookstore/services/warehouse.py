import math
from typing import Iterable, List, Optional, Tuple
import logging

from sqlalchemy.orm import Session

from bookstore.models.catalog import Address
from bookstore.models.inventory import Warehouse
from bookstore.repository.inventory_repo import InventoryRepository, WarehouseRepository
from bookstore.utils.errors import InsufficientStock, InvalidWarehouse
from bookstore.utils.settings import Settings

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


class WarehouseSelector:
    """为整单选择一个能满足所有商品的仓库（v1 不拆单）

    只读、不加锁；真正的库存扣减由 reserve 在事务内完成。
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def select(self, db: Session, address: Address, items: Iterable[Tuple[object, int]]) -> Warehouse:
        items = list(items)
        if not items:
            raise InvalidWarehouse("No items to fulfill")

        inventory = InventoryRepository(db)
        if address.latitude is None or address.longitude is None:
            warehouse = self._default_warehouse(db, address.province)
        else:
            warehouse = self._nearest_with_stock(inventory, address, items[0])

        # 校验所选仓库能满足剩余所有商品
        for book_id, quantity in items:
            if not inventory.check(warehouse.id, book_id, quantity):
                available = inventory.available(warehouse.id, book_id)
                logger.info(
                    f"Warehouse cannot fulfill item | warehouse：{warehouse.code} | book：{book_id} | requested：{quantity} | available：{available}"
                )
                raise InsufficientStock(book_id=book_id, requested=quantity, available=available)

        logger.info(f"Warehouse selected | warehouse：{warehouse.code} | items：{len(items)}")
        return warehouse

    def _default_warehouse(self, db: Session, province: Optional[str]) -> Warehouse:
        code = self.settings.warehouse_code_for_province(province)
        warehouse = WarehouseRepository(db).get_by_code(code)
        if not warehouse and code != self.settings.default_warehouse_code:
            warehouse = WarehouseRepository(db).get_by_code(self.settings.default_warehouse_code)
        if not warehouse:
            raise InvalidWarehouse(f"Default warehouse {code} not found")
        return warehouse

    def _nearest_with_stock(self, inventory: InventoryRepository, address: Address, first_item) -> Warehouse:
        book_id, quantity = first_item
        candidates = inventory.find_stocked_warehouses(book_id, quantity)
        if not candidates:
            raise InsufficientStock(book_id=book_id, requested=quantity, available=0)

        def sort_key(candidate) -> Tuple[float, str]:
            warehouse, _ = candidate
            if warehouse.latitude is None or warehouse.longitude is None:
                distance = math.inf
            else:
                distance = haversine_km(address.latitude, address.longitude, warehouse.latitude, warehouse.longitude)
            return distance, str(warehouse.id)

        ranked: List = sorted(candidates, key=sort_key)
        return ranked[0][0]
