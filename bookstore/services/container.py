"""服务装配

API 和 Celery worker 共用同一套服务实例；测试通过 set_container 注入内存实现。
"""
from typing import Dict, Optional
import logging

from bookstore.gateways.base import PaymentGatewayPort
from bookstore.jobs.dispatcher import JobDispatcher
from bookstore.services.inventory import InventorySyncService
from bookstore.services.order import OrderService
from bookstore.services.payment import PaymentService
from bookstore.services.redis_service import StockCache
from bookstore.services.refund import RefundService
from bookstore.utils.clock import utcnow
from bookstore.utils.settings import Settings

logger = logging.getLogger(__name__)


class ServiceContainer:
    def __init__(
        self,
        settings: Settings,
        session_factory,
        dispatcher: JobDispatcher,
        gateways: Dict[str, PaymentGatewayPort],
        clock=utcnow,
        cache: Optional[StockCache] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.gateways = gateways
        self.order_service = OrderService(session_factory, settings, dispatcher, clock=clock)
        self.payment_service = PaymentService(session_factory, settings, gateways, self.order_service, clock=clock)
        self.refund_service = RefundService(session_factory, settings, gateways, clock=clock)
        self.cache = cache or StockCache(settings.redis_url)
        self.inventory_sync = InventorySyncService(session_factory, self.cache, clock=clock)


_container: Optional[ServiceContainer] = None


def build_default_container() -> ServiceContainer:
    from bookstore.gateways.registry import build_gateways
    from bookstore.jobs.celery_app import celery_app
    from bookstore.jobs.dispatcher import CeleryJobDispatcher
    from bookstore.utils.database import SessionLocal
    from bookstore.utils.settings import settings

    logger.info("Building default service container")
    return ServiceContainer(settings, SessionLocal, CeleryJobDispatcher(celery_app), build_gateways(settings))


def get_container() -> ServiceContainer:
    global _container
    if _container is None:
        _container = build_default_container()
    return _container


def set_container(container: Optional[ServiceContainer]) -> None:
    global _container
    _container = container
