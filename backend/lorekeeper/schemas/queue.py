from pydantic import BaseModel, Field


class SchedulerStatus(BaseModel):
    """限速调度器状态"""

    active: int = Field(..., description="正在执行的请求数")
    waiting: int = Field(..., description="等待中的请求数")
    max_concurrent: int = Field(..., description="最大并发数")
    total_processed: int = Field(..., description="已处理总数")
    min_interval: float = Field(..., description="调用间最小间隔（秒）")
    total_delay: float = Field(..., description="累计等待时长（秒）")


class QueueStatusResponse(BaseModel):
    completion: SchedulerStatus
    embedding: SchedulerStatus
