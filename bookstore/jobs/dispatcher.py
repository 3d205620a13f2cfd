"""后台任务投递端口

业务层只依赖 JobDispatcher.enqueue，具体实现可以是 Celery 或测试用的内存实现。
所有任务处理函数都必须幂等（至少一次投递）。
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

# 任务名称
TASK_AUTO_RELEASE_RESERVATION = "orders.auto_release_reservation"
TASK_STOCK_RESYNC = "inventory.stock_resync"
TASK_CANCEL_EXPIRED_PAYMENTS = "payments.cancel_expired_payments"
TASK_RETRY_FAILED_WEBHOOKS = "payments.retry_failed_webhooks"

# 队列
QUEUE_DEFAULT = "default"
QUEUE_ORDERS = "orders"
QUEUE_INVENTORY = "inventory"
QUEUE_PAYMENTS = "payments"

# 库存同步来源
SOURCE_SALE = "SALE"
SOURCE_ORDER_CANCELLED = "ORDER_CANCELLED"


class JobDispatcher(ABC):
    @abstractmethod
    def enqueue(
        self,
        task: str,
        payload: Dict[str, Any],
        delay: Optional[int] = None,
        max_retry: Optional[int] = None,
        queue: Optional[str] = None,
    ) -> Optional[str]:
        """投递任务，delay 为秒数，返回任务 ID"""


class CeleryJobDispatcher(JobDispatcher):
    def __init__(self, celery_app):
        self.celery_app = celery_app

    def enqueue(self, task, payload, delay=None, max_retry=None, queue=None):
        options = {"queue": queue or QUEUE_DEFAULT}
        if delay:
            options["countdown"] = delay
        if max_retry is not None:
            options["headers"] = {"max_retry": max_retry}
        result = self.celery_app.send_task(task, kwargs=payload, **options)
        logger.info(f"Job enqueued | task：{task} | id：{result.id} | delay：{delay} | queue：{options['queue']}")
        return result.id


@dataclass
class EnqueuedJob:
    task: str
    payload: Dict[str, Any]
    delay: Optional[int] = None
    max_retry: Optional[int] = None
    queue: Optional[str] = None


@dataclass
class InMemoryJobDispatcher(JobDispatcher):
    """记录投递的任务，供测试和本地调试使用"""
    jobs: List[EnqueuedJob] = field(default_factory=list)
    fail: bool = False

    def enqueue(self, task, payload, delay=None, max_retry=None, queue=None):
        if self.fail:
            raise ConnectionError("job queue unavailable")
        self.jobs.append(EnqueuedJob(task, dict(payload), delay, max_retry, queue))
        return f"job-{len(self.jobs)}"

    def of(self, task: str) -> List[EnqueuedJob]:
        return [job for job in self.jobs if job.task == task]

    def clear(self):
        self.jobs.clear()
