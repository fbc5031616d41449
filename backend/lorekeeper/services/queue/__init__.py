"""
请求调度模块

为补全和嵌入调用提供限速与串行控制。
"""

from .rate_limiter import RateLimitedScheduler

__all__ = [
    "RateLimitedScheduler",
]
