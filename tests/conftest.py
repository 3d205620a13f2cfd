import pytest
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from redis.exceptions import ConnectionError as RedisConnectionError

from bookstore.gateways.mock import MockGateway
from bookstore.jobs.dispatcher import InMemoryJobDispatcher
from bookstore.models.catalog import Address, Book, Cart, CartItem, Promotion, User
from bookstore.models.inventory import InventoryRow, Warehouse
from bookstore.services.redis_service import StockCache
from bookstore.services.container import ServiceContainer
from bookstore.utils.database import init_db
from bookstore.utils.settings import Settings

START = datetime(2026, 3, 10, 9, 0, 0)


# 可手动推进的时钟
class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


# 内存版 Redis，只实现库存缓存用到的命令
class FakeRedis:
    def __init__(self, fail: bool = False):
        self.store = {}
        self.fail = fail

    async def ping(self):
        return True

    async def set(self, key, value):
        if self.fail:
            raise RedisConnectionError("Connection refused")
        self.store[key] = value
        return True

    async def get(self, key):
        return self.store.get(key)


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def settings():
    """测试配置：运费和货到付款手续费都为 15，便于核对金额"""
    return Settings(
        database_url="sqlite://",
        shipping_fee=Decimal("15"),
        cod_fee=Decimal("15"),
        default_warehouse_code="WH-HN-01",
        admin_user_ids=frozenset(),
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def dispatcher():
    return InMemoryJobDispatcher()


@pytest.fixture
def gateways():
    return {"vnpay": MockGateway("vnpay"), "momo": MockGateway("momo")}


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def stock_cache(redis_client):
    return StockCache("redis://test", client=redis_client)


@pytest.fixture
def container(settings, session_factory, dispatcher, gateways, clock, stock_cache):
    return ServiceContainer(settings, session_factory, dispatcher, gateways, clock=clock, cache=stock_cache)


@pytest.fixture
def seed(session_factory):
    """基础数据：一个用户、一个管理员、河内地址、两个仓库、一本书（河内仓 10 本）、购物车 2 本"""
    ids = SimpleNamespace(
        user_id=uuid.uuid4(),
        other_user_id=uuid.uuid4(),
        admin_id=uuid.uuid4(),
        address_id=uuid.uuid4(),
        book_id=uuid.uuid4(),
        hn_warehouse_id=uuid.uuid4(),
        hcm_warehouse_id=uuid.uuid4(),
        cart_id=uuid.uuid4(),
    )
    with session_factory() as db:
        db.add_all([
            User(id=ids.user_id, email="reader@example.com", full_name="Reader"),
            User(id=ids.other_user_id, email="other@example.com", full_name="Other"),
            User(id=ids.admin_id, email="admin@example.com", full_name="Admin", role="admin"),
        ])
        db.flush()
        db.add(Address(
            id=ids.address_id,
            user_id=ids.user_id,
            recipient_name="Nguyen Van A",
            phone="0900000000",
            province="Hà Nội",
            district="Ba Đình",
            ward="Phúc Xá",
            is_default=True,
        ))
        db.add_all([
            Warehouse(id=ids.hn_warehouse_id, code="WH-HN-01", name="Ha Noi", province="Hà Nội", latitude=21.0285, longitude=105.8542),
            Warehouse(id=ids.hcm_warehouse_id, code="WH-HCM-01", name="Ho Chi Minh", province="TP. Hồ Chí Minh", latitude=10.7769, longitude=106.7009),
        ])
        db.add(Book(id=ids.book_id, title="Dế Mèn Phiêu Lưu Ký", slug="de-men-phieu-luu-ky", author_name="Tô Hoài", price=Decimal("100")))
        db.flush()
        db.add_all([
            InventoryRow(warehouse_id=ids.hn_warehouse_id, book_id=ids.book_id, available=10, reserved=0),
            InventoryRow(warehouse_id=ids.hcm_warehouse_id, book_id=ids.book_id, available=4, reserved=0),
        ])
        db.add(Cart(id=ids.cart_id, user_id=ids.user_id))
        db.flush()
        db.add(CartItem(cart_id=ids.cart_id, book_id=ids.book_id, quantity=2))
        db.commit()
    return ids


@pytest.fixture
def make_promotion(session_factory):
    def _make(code="SALE10", attach_to_cart=None, **overrides):
        values = dict(
            code=code,
            discount_type="percentage",
            discount_value=Decimal("10"),
            min_order_amount=Decimal("0"),
            is_active=True,
            starts_at=START - timedelta(days=1),
            expires_at=START + timedelta(days=30),
        )
        values.update(overrides)
        with session_factory() as db:
            promotion = Promotion(**values)
            db.add(promotion)
            if attach_to_cart is not None:
                cart = db.get(Cart, attach_to_cart)
                cart.promo_code = code
            db.commit()
            return promotion.id
    return _make


@pytest.fixture
def stock(session_factory):
    """读取 (available, reserved)"""
    def _stock(warehouse_id, book_id):
        with session_factory() as db:
            row = (
                db.query(InventoryRow)
                .filter(InventoryRow.warehouse_id == warehouse_id, InventoryRow.book_id == book_id)
                .first()
            )
            return row.available, row.reserved
    return _stock
