from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from bookstore.models.base import Base
from bookstore.utils.settings import settings
from typing import Callable, List
import logging

logger = logging.getLogger(__name__)


def build_engine(database_url: str):
    """根据数据库类型创建引擎"""
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        pool_size=5,  # 连接池大小
        max_overflow=10,  # 最大溢出连接数
        pool_timeout=30,  # 连接超时时间
        pool_recycle=1800,  # 连接回收时间（30分钟）
        pool_pre_ping=True  # 在使用连接前先测试连接是否有效
    )


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """获取数据库会话"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """初始化数据库"""
    from bookstore.models import catalog, inventory, order, payment  # noqa: F401 注册全部表
    Base.metadata.create_all(bind=bind or engine)


class UnitOfWork:
    """事务上下文管理器

    正常退出时提交，异常时回滚并继续抛出。
    after_commit 注册的回调只在提交成功后执行，回调失败只记录日志。
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory
        self.session: Session = None
        self._after_commit: List[Callable[[], None]] = []
        self._closed = False

    def __enter__(self) -> "UnitOfWork":
        self.session = self.session_factory()
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc_type is not None:
                self.rollback()
                logger.debug(f"Transaction rolled back | reason：{exc}")
                return False
            if not self._closed:
                self.commit()
        finally:
            self.session.close()
        return False

    def after_commit(self, hook: Callable[[], None]):
        self._after_commit.append(hook)

    def commit(self):
        self.session.commit()
        self._closed = True
        hooks, self._after_commit = self._after_commit, []
        for hook in hooks:
            try:
                hook()
            except Exception as e:
                logger.error(f"After-commit hook failed | hook：{getattr(hook, '__name__', hook)} | error：{str(e)}", exc_info=True)

    def rollback(self):
        self.session.rollback()
        self._closed = True
        self._after_commit = []
