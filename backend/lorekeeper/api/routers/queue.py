"""
调度器状态API路由

补全与嵌入调用共用进程内的限速调度器，这里只提供状态查询。
"""

import logging

from fastapi import APIRouter

from ...core.dependencies import get_completion_scheduler, get_embedding_scheduler
from ...schemas.queue import QueueStatusResponse, SchedulerStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/queue", tags=["调度器"])


@router.get("/status", response_model=QueueStatusResponse)
async def get_queue_status() -> QueueStatusResponse:
    """获取补全与嵌入调度器的当前状态"""
    return QueueStatusResponse(
        completion=SchedulerStatus(**get_completion_scheduler().get_status()),
        embedding=SchedulerStatus(**get_embedding_scheduler().get_status()),
    )
