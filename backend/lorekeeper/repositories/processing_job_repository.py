from typing import List, Optional

from sqlalchemy import select

from .base import BaseRepository
from ..core.state_machine import TERMINAL_STATES, JobState
from ..models import ProcessingJob


class ProcessingJobRepository(BaseRepository[ProcessingJob]):
    """处理任务Repository"""

    model = ProcessingJob

    async def list_active(self, project_id: Optional[str] = None) -> List[ProcessingJob]:
        """获取未进入终态的任务"""
        terminal = [state.value for state in TERMINAL_STATES]
        stmt = select(ProcessingJob).where(ProcessingJob.state.not_in(terminal))
        if project_id:
            stmt = stmt.where(ProcessingJob.project_id == project_id)
        stmt = stmt.order_by(ProcessingJob.started_at)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_latest(self, project_id: str) -> Optional[ProcessingJob]:
        stmt = (
            select(ProcessingJob)
            .where(ProcessingJob.project_id == project_id)
            .order_by(ProcessingJob.started_at.desc(), ProcessingJob.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_last_completed(self, project_id: str) -> Optional[ProcessingJob]:
        """最近一次成功完成的任务"""
        stmt = (
            select(ProcessingJob)
            .where(
                ProcessingJob.project_id == project_id,
                ProcessingJob.state == JobState.DONE.value,
            )
            .order_by(ProcessingJob.started_at.desc(), ProcessingJob.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()
