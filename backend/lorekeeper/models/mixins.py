"""
SQLAlchemy 模型通用字段 Mixin

收敛多个知识表重复的时间戳与审核标记字段定义，避免并行维护漂移。
"""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, func
from sqlalchemy.orm import Mapped, mapped_column

# 自定义列类型：兼容跨数据库环境
BIGINT_PK_TYPE = BigInteger().with_variant(Integer, "sqlite")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimestampsMixin:
    """通用时间戳字段（创建/更新时间）

    同时提供 Python 端默认值，异步会话中 flush 后无需再次加载。
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        nullable=False,
    )


class ReviewFlagsMixin:
    """审核相关标记（存疑/已核实/用户编辑过）"""

    is_flagged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    user_edited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
