"""
异常处理辅助工具

提供统一的异常日志记录函数，改善代码一致性。
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


def log_exception(
    exc: Exception,
    context: str,
    logger_instance: Optional[logging.Logger] = None,
    level: str = "error",
    include_traceback: bool = True,
    **extra_context
) -> None:
    """
    统一的异常日志记录函数

    Args:
        exc: 异常对象
        context: 上下文描述（如"抽取章节知识"）
        logger_instance: 自定义logger，默认使用模块logger
        level: 日志级别（error/warning/info）
        include_traceback: 是否包含完整堆栈
        **extra_context: 额外上下文信息（如project_id, chapter_id等）

    Example:
        log_exception(exc, "合并裁决", project_id=project_id, item_type="character")
    """
    log = logger_instance or logger
    log_func = getattr(log, level, log.error)

    context_parts = [f"{k}={v}" for k, v in extra_context.items() if v is not None]
    context_str = f" ({', '.join(context_parts)})" if context_parts else ""

    message = "%s失败 [%s]: %s%s"
    args = (context, type(exc).__name__, exc, context_str)
    if include_traceback:
        log_func(message, *args, exc_info=exc)
    else:
        log_func(message, *args)
