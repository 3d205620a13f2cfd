from celery import Celery
from kombu import Queue
import logging

from bookstore.jobs.dispatcher import (
    QUEUE_DEFAULT, QUEUE_ORDERS, QUEUE_INVENTORY, QUEUE_PAYMENTS,
    TASK_CANCEL_EXPIRED_PAYMENTS, TASK_RETRY_FAILED_WEBHOOKS,
)
from bookstore.utils.settings import settings

logger = logging.getLogger(__name__)


def create_celery_app() -> Celery:
    """创建并配置Celery应用实例"""
    app = Celery(
        "bookstore",
        broker=settings.celery_broker_url,
        backend=settings.celery_result_backend,
        include=["bookstore.jobs.tasks"],
    )

    app.conf.update(
        task_serializer='json',
        accept_content=['json'],
        result_serializer='json',
        timezone='Asia/Ho_Chi_Minh',
        enable_utc=True,
        task_acks_late=True,  # 至少一次投递，处理函数需幂等
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        worker_hijack_root_logger=False,
        result_expires=24 * 60 * 60,
        task_default_queue=QUEUE_DEFAULT,
        task_routes={
            'orders.*': {'queue': QUEUE_ORDERS},
            'inventory.*': {'queue': QUEUE_INVENTORY},
            'payments.*': {'queue': QUEUE_PAYMENTS},
        },
    )

    app.conf.task_queues = (
        Queue(QUEUE_DEFAULT, routing_key=QUEUE_DEFAULT),
        Queue(QUEUE_ORDERS, routing_key=QUEUE_ORDERS),
        Queue(QUEUE_INVENTORY, routing_key=QUEUE_INVENTORY),
        Queue(QUEUE_PAYMENTS, routing_key=QUEUE_PAYMENTS),
    )

    app.conf.beat_schedule = {
        # 取消超时未支付的支付单
        'cancel-expired-payments': {
            'task': TASK_CANCEL_EXPIRED_PAYMENTS,
            'schedule': 60.0,  # 每分钟执行一次
            'options': {'queue': QUEUE_PAYMENTS, 'expires': 60},
        },
        # 重试处理失败的回调
        'retry-failed-webhooks': {
            'task': TASK_RETRY_FAILED_WEBHOOKS,
            'schedule': 300.0,  # 每5分钟执行一次
            'options': {'queue': QUEUE_PAYMENTS, 'expires': 300},
        },
    }

    logger.info(f"Celery app created | broker：{settings.celery_broker_url}")
    return app


celery_app = create_celery_app()
