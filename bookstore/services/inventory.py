from typing import Optional
import logging

from redis.exceptions import RedisError

from bookstore.repository.inventory_repo import InventoryRepository
from bookstore.services.redis_service import StockCache, book_stock_key
from bookstore.utils.clock import utcnow
from bookstore.utils.database import UnitOfWork

logger = logging.getLogger(__name__)


class InventorySyncService:
    """库存同步：售出 / 取消后重新汇总某本书的库存，写入 Redis 供下游读取"""

    def __init__(self, session_factory, cache: StockCache, clock=utcnow):
        self.session_factory = session_factory
        self.cache = cache
        self.clock = clock

    async def resync(self, book_id, source: str, warehouse_id: Optional[str] = None) -> dict:
        with UnitOfWork(self.session_factory) as uow:
            snapshot = InventoryRepository(uow.session).snapshot(book_id)
        snapshot["updated_at"] = self.clock().isoformat()

        # 缓存写失败不让任务失败：数据库仍是权威数据，下一次同步会覆盖
        try:
            await self.cache.set_book_stock(book_id, snapshot)
            cached = True
        except RedisError as e:
            cached = False
            logger.error(f"Failed to write stock cache | key：{book_stock_key(book_id)} | error：{str(e)}")

        logger.info(
            f"Stock resynced | book：{book_id} | source：{source} | warehouse：{warehouse_id} "
            f"| available：{snapshot['available']} | total：{snapshot['total_quantity']} | cached：{cached}"
        )
        return {**snapshot, "source": source, "warehouse_id": warehouse_id, "cached": cached}
