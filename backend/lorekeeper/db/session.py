from collections.abc import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ..core.config import settings


def _enable_sqlite_pragmas(dbapi_conn, connection_record):
    """每个SQLite连接建立时开启WAL与忙等待，后台任务与请求会话可并发读写"""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def build_engine(database_uri: str, echo: bool = False) -> AsyncEngine:
    """按驱动类型创建异步引擎：SQLite 不使用连接池，MySQL 保持健康检查与连接回收"""
    if make_url(database_uri).get_backend_name() == "sqlite":
        engine = create_async_engine(
            database_uri,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
            poolclass=NullPool,
        )
        event.listen(engine.sync_engine, "connect", _enable_sqlite_pragmas)
        return engine
    return create_async_engine(database_uri, echo=echo, pool_pre_ping=True, pool_recycle=3600)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # 禁用 expire_on_commit，提交后仍可直接返回模型对象
    return async_sessionmaker(bind=engine, expire_on_commit=False)


engine = build_engine(settings.sqlalchemy_database_uri, echo=settings.debug)
AsyncSessionLocal = build_session_factory(engine)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI 依赖项：提供一个作用域内共享的数据库会话。"""
    async with AsyncSessionLocal() as session:
        yield session
