"""API路由汇总"""

from fastapi import APIRouter

from . import analysis, queue

api_router = APIRouter()

api_router.include_router(analysis.router)
api_router.include_router(queue.router)  # 已包含/api/queue前缀
