"""Celery 任务

每个任务只负责把参数交给服务层，业务逻辑和幂等性都在服务层保证。
"""
from typing import Any, Dict, Optional
import asyncio
import logging
import uuid

from celery import Task
from celery.signals import worker_process_init

from bookstore.jobs.celery_app import celery_app
from bookstore.jobs.dispatcher import (
    QUEUE_ORDERS, QUEUE_INVENTORY, QUEUE_PAYMENTS,
    TASK_AUTO_RELEASE_RESERVATION, TASK_STOCK_RESYNC, TASK_CANCEL_EXPIRED_PAYMENTS, TASK_RETRY_FAILED_WEBHOOKS,
)
from bookstore.services.container import get_container
from bookstore.utils.logger import setup_logging

logger = logging.getLogger(__name__)


@worker_process_init.connect
def init_worker_logging(**kwargs):
    setup_logging()


class BookstoreTask(Task):
    """任务基类：失败自动重试（指数退避）"""

    autoretry_for = (Exception,)
    retry_kwargs = {'max_retries': 3}
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True

    def message_max_retry(self) -> Optional[int]:
        """投递时通过 max_retry 消息头指定的重试上限"""
        value = getattr(self.request, 'max_retry', None)
        if value is None:
            value = (self.request.headers or {}).get('max_retry')
        return int(value) if value is not None else None

    def retry(self, *args, **kwargs):
        max_retry = self.message_max_retry()
        if max_retry is not None:
            kwargs['max_retries'] = max_retry
        return super().retry(*args, **kwargs)

    def on_success(self, retval: Any, task_id: str, args: tuple, kwargs: dict):
        logger.info(f"Task succeeded | task：{self.name} | id：{task_id} | result：{retval}")

    def on_failure(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any):
        logger.error(f"Task failed | task：{self.name} | id：{task_id} | error：{type(exc).__name__}: {str(exc)}")


@celery_app.task(bind=True, base=BookstoreTask, name=TASK_AUTO_RELEASE_RESERVATION, queue=QUEUE_ORDERS)
def auto_release_reservation(self, order_id: str, order_number: Optional[str] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
    """超时未支付时释放库存并取消订单"""
    released = asyncio.run(get_container().order_service.auto_release(uuid.UUID(order_id)))
    return {"order_id": order_id, "order_number": order_number, "released": released}


@celery_app.task(bind=True, base=BookstoreTask, name=TASK_STOCK_RESYNC, queue=QUEUE_INVENTORY)
def stock_resync(self, book_id: str, source: str, warehouse_id: Optional[str] = None) -> Dict[str, Any]:
    return asyncio.run(get_container().inventory_sync.resync(uuid.UUID(book_id), source, warehouse_id))


@celery_app.task(bind=True, base=BookstoreTask, name=TASK_CANCEL_EXPIRED_PAYMENTS, queue=QUEUE_PAYMENTS)
def cancel_expired_payments(self, batch: Optional[int] = None) -> Dict[str, int]:
    return asyncio.run(get_container().payment_service.cancel_expired(batch))


@celery_app.task(bind=True, base=BookstoreTask, name=TASK_RETRY_FAILED_WEBHOOKS, queue=QUEUE_PAYMENTS)
def retry_failed_webhooks(self, batch: Optional[int] = None) -> Dict[str, int]:
    return asyncio.run(get_container().payment_service.retry_failed_webhooks(batch))
