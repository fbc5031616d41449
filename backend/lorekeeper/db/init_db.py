import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from ..core.config import settings
from .. import models  # noqa: F401  确保所有模型注册到元数据
from .base import Base
from .session import engine as default_engine

logger = logging.getLogger(__name__)


async def init_db(engine: AsyncEngine = None) -> None:
    """创建知识库所需的全部表结构（已存在的表保持不变）。"""
    target = engine or default_engine

    if settings.is_sqlite_backend and engine is None:
        settings.storage_dir.mkdir(parents=True, exist_ok=True)

    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("数据库表结构初始化完成: tables=%d", len(Base.metadata.tables))
