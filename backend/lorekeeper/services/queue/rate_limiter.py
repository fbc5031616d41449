"""
限速调度器

所有外部调用（补全、嵌入）都经过调度器：请求按到达顺序执行，
且相邻两次调用的开始时间至少间隔 min_interval 秒。
时钟与休眠函数均可注入，测试中无需真实等待。
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class RateLimitedScheduler:
    """
    限速调度器

    - 并发上限（默认 1，即严格串行，按 FIFO 顺序执行）
    - 两次调用开始之间的最小间隔
    - 状态跟踪（活跃数、等待数、已处理数、累计等待时长）
    """

    def __init__(
        self,
        name: str,
        min_interval: float = 0.0,
        *,
        max_concurrent: int = 1,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ):
        """
        初始化调度器

        Args:
            name: 调度器名称（用于日志标识）
            min_interval: 两次调用开始之间的最小间隔（秒）
            max_concurrent: 最大并发数
            clock: 返回单调时间（秒）的函数，默认 time.monotonic
            sleep: 异步休眠函数，默认 asyncio.sleep
        """
        if min_interval < 0:
            raise ValueError("最小间隔不能为负数")
        if max_concurrent < 1:
            raise ValueError("最大并发数必须大于0")

        self.name = name
        self._min_interval = float(min_interval)
        self._max_concurrent = max_concurrent
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        # asyncio.Semaphore / Lock 按等待顺序唤醒，保证 FIFO
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._interval_lock = asyncio.Lock()
        self._last_start: Optional[float] = None

        self._active_count = 0
        self._waiting_count = 0
        self._total_processed = 0
        self._total_delay = 0.0

        logger.info(
            "调度器 %s 已初始化: min_interval=%.2fs max_concurrent=%d",
            self.name, self._min_interval, self._max_concurrent,
        )

    async def _wait_for_turn(self) -> None:
        async with self._interval_lock:
            if self._last_start is not None and self._min_interval > 0:
                remaining = self._last_start + self._min_interval - self._clock()
                if remaining > 0:
                    logger.debug("调度器 %s: 等待 %.2fs 以满足最小间隔", self.name, remaining)
                    self._total_delay += remaining
                    await self._sleep(remaining)
            self._last_start = self._clock()

    @asynccontextmanager
    async def request_slot(self):
        """
        上下文管理器，自动管理槽位的获取和释放

        使用示例：
            async with scheduler.request_slot():
                await do_something()
        """
        self._waiting_count += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting_count -= 1
        try:
            await self._wait_for_turn()
            self._active_count += 1
            try:
                yield
            finally:
                self._active_count -= 1
                self._total_processed += 1
        finally:
            self._semaphore.release()

    async def run(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """在调度器的槽位中执行一次异步调用"""
        async with self.request_slot():
            return await func(*args, **kwargs)

    def get_status(self) -> Dict[str, Any]:
        """
        获取调度器状态

        Returns:
            包含 active, waiting, max_concurrent, total_processed, min_interval, total_delay 的字典
        """
        return {
            "active": self._active_count,
            "waiting": self._waiting_count,
            "max_concurrent": self._max_concurrent,
            "total_processed": self._total_processed,
            "min_interval": self._min_interval,
            "total_delay": round(self._total_delay, 3),
        }

    @property
    def min_interval(self) -> float:
        return self._min_interval
