import json
from contextlib import asynccontextmanager
from redis import asyncio as aioredis
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)


def book_stock_key(book_id) -> str:
    return f"inventory:book:{book_id}:total"


class StockCache:
    """书籍总库存缓存

    键为 inventory:book:{book_id}:total，值为库存汇总 JSON，不设过期时间，
    完全依赖售出 / 取消后的同步任务刷新。数据库始终是权威数据源。
    """

    def __init__(self, redis_url: str, client: Optional[aioredis.Redis] = None):
        self.redis_url = redis_url
        # 注入的客户端由调用方管理生命周期
        self.client = client

    @asynccontextmanager
    async def _connection(self):
        if self.client is not None:
            yield self.client
            return
        # Celery 任务每次 asyncio.run 都是新的事件循环，连接不能跨任务复用
        redis = await aioredis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True
        )
        try:
            yield redis
        finally:
            await redis.aclose()

    async def ping(self) -> bool:
        async with self._connection() as redis:
            return bool(await redis.ping())

    async def set_book_stock(self, book_id, data: Dict[str, Any]) -> None:
        """写入库存汇总（无 TTL）"""
        async with self._connection() as redis:
            await redis.set(book_stock_key(book_id), json.dumps(data))

    async def get_book_stock(self, book_id) -> Optional[Dict[str, Any]]:
        async with self._connection() as redis:
            raw = await redis.get(book_stock_key(book_id))
        return json.loads(raw) if raw else None
