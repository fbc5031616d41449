"""
分析任务管理

状态转换统一经过 core.state_machine 校验；取消可在任何非终态强制进入 failed。
超过 stale_minutes 没有心跳的非终态任务视为卡死，在回答状态查询或创建新任务之前自动置为 failed。
任务状态变更立即提交，保证其他会话（状态查询、取消请求）能看到最新状态。
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.pipeline_config import DedupConfig, JobConfig
from ..core.state_machine import JobState, is_terminal, validate_transition
from ..exceptions import ConflictError, ResourceNotFoundError
from ..models import ProcessingJob
from ..models.mixins import utc_now
from ..repositories import (
    ChapterRepository,
    ContentHashRepository,
    NarrativeElementRepository,
    ProcessingJobRepository,
)
from ..schemas.analysis import AnalysisStatus, CancelResponse, JobSnapshot

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite 读回的时间不带时区，统一按 UTC 处理"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JobManager:
    """分析任务的创建、状态转换与查询"""

    def __init__(
        self,
        session: AsyncSession,
        *,
        config: Optional[JobConfig] = None,
        dedup_config: Optional[DedupConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.config = config or JobConfig()
        self.dedup_config = dedup_config or DedupConfig()
        self._clock = clock
        self.repo = ProcessingJobRepository(session)

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------
    async def get_job(self, job_id: str) -> ProcessingJob:
        job = await self.repo.get_by_id(job_id)
        if job is None:
            raise ResourceNotFoundError("分析任务", job_id)
        return job

    async def is_cancelled(self, job_id: str) -> bool:
        """从数据库重新读取任务，判断是否已被取消（或因超时失败）"""
        job = await self.get_job(job_id)
        await self.session.refresh(job)
        return job.state == JobState.FAILED.value

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------
    async def create_job(self, project_id: str, job_type: str = "project_analysis") -> ProcessingJob:
        """
        创建任务

        Raises:
            ConflictError: 项目已有未结束且未超时的任务
        """
        await self.sweep_stale(project_id)
        active = await self.repo.list_active(project_id)
        if active:
            raise ConflictError(f"项目已有正在进行的分析任务: {active[0].id}")

        now = self._clock()
        job = ProcessingJob(
            project_id=project_id,
            job_type=job_type,
            state=JobState.PENDING.value,
            total_steps=self.config.total_steps,
            completed_steps=0,
            progress=0.0,
            started_at=now,
            heartbeat_at=now,
        )
        await self.repo.add(job)
        await self.session.commit()
        logger.info("创建分析任务: project_id=%s job_id=%s", project_id, job.id)
        return job

    async def transition(
        self,
        job_id: str,
        target: JobState,
        *,
        step: Optional[str] = None,
    ) -> ProcessingJob:
        """
        状态转换

        Raises:
            InvalidStateTransitionError: 转换不合法
        """
        job = await self.get_job(job_id)
        target_state = validate_transition(job.state, target)
        previous = job.state
        job.state = target_state.value
        if step:
            job.current_step = step
        job.heartbeat_at = self._clock()
        if target_state in (JobState.DONE, JobState.FAILED):
            job.completed_at = job.heartbeat_at
        await self.session.commit()
        logger.info("任务状态转换: job_id=%s %s -> %s", job_id, previous, target_state.value)
        return job

    async def advance(self, job_id: str, step: str) -> ProcessingJob:
        """完成一个步骤，更新进度百分比"""
        job = await self.get_job(job_id)
        job.completed_steps = min(job.completed_steps + 1, job.total_steps)
        job.progress = round(job.completed_steps / max(job.total_steps, 1) * 100, 1)
        job.current_step = step
        job.heartbeat_at = self._clock()
        await self.session.commit()
        return job

    async def heartbeat(self, job_id: str, step: Optional[str] = None) -> None:
        job = await self.get_job(job_id)
        job.heartbeat_at = self._clock()
        if step:
            job.current_step = step
        await self.session.commit()

    async def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> ProcessingJob:
        job = await self.transition(job_id, JobState.DONE, step="完成")
        job.completed_steps = job.total_steps
        job.progress = 100.0
        job.result = dict(result or {})
        await self.session.commit()
        return job

    async def fail(self, job_id: str, error_details: Dict[str, Any]) -> ProcessingJob:
        job = await self.transition(job_id, JobState.FAILED)
        job.error_details = dict(error_details)
        await self.session.commit()
        logger.warning("分析任务失败: job_id=%s details=%s", job_id, error_details)
        return job

    async def cancel(self, job_id: str) -> ProcessingJob:
        """
        取消任务：任何非终态都强制进入 failed 并标记 cancelled

        已结束的任务保持原状返回。
        """
        job = await self.get_job(job_id)
        await self.session.refresh(job)
        if is_terminal(job.state):
            logger.info("任务已结束，忽略取消: job_id=%s state=%s", job_id, job.state)
            return job

        previous = job.state
        now = self._clock()
        job.state = JobState.FAILED.value
        job.error_details = {"cancelled": True, "reason": "用户取消", "state_before": previous}
        job.heartbeat_at = now
        job.completed_at = now
        await self.session.commit()
        logger.info("分析任务已取消: job_id=%s state_before=%s", job_id, previous)
        return job

    async def request_cancel(self, job_id: str) -> CancelResponse:
        """取消任务并返回接口响应；cancelled 只在本次或此前确实被取消时为 True"""
        job = await self.cancel(job_id)
        return CancelResponse(
            job_id=job.id,
            cancelled=bool((job.error_details or {}).get("cancelled")),
            state=job.state,
        )

    async def sweep_stale(self, project_id: Optional[str] = None) -> List[ProcessingJob]:
        """把超时未心跳的非终态任务置为 failed（timeout）"""
        now = self._clock()
        window = timedelta(minutes=self.config.stale_minutes)
        swept: List[ProcessingJob] = []
        for job in await self.repo.list_active(project_id):
            last_seen = _aware(job.heartbeat_at) or _aware(job.started_at)
            if last_seen is None or now - last_seen <= window:
                continue
            previous = job.state
            job.state = JobState.FAILED.value
            job.error_details = {
                "timeout": True,
                "reason": f"超过 {self.config.stale_minutes} 分钟无进展",
                "state_before": previous,
            }
            job.completed_at = now
            swept.append(job)
            logger.warning("清理卡死任务: job_id=%s state_before=%s", job.id, previous)

        if swept:
            await self.session.commit()
        return swept

    # ------------------------------------------------------------------
    # 状态汇总
    # ------------------------------------------------------------------
    async def get_status(self, project_id: str) -> AnalysisStatus:
        await self.sweep_stale(project_id)

        latest = await self.repo.get_latest(project_id)
        jobs = await self.repo.list_by_project(project_id)
        error_count = sum(1 for job in jobs if job.state == JobState.FAILED.value)

        low_confidence = await NarrativeElementRepository(self.session).count_low_confidence(
            project_id, self.dedup_config.low_confidence_threshold
        )

        chapters = await ChapterRepository(self.session).list_for_project(project_id)
        records = {
            record.chapter_id: record
            for record in await ContentHashRepository(self.session).list_by_chapters(c.id for c in chapters)
        }
        unanalyzed = sum(
            1 for chapter in chapters
            if chapter.id not in records or records[chapter.id].needs_reprocessing
        )

        return AnalysisStatus(
            is_processing=latest is not None and not is_terminal(latest.state),
            has_errors=latest is not None and latest.state == JobState.FAILED.value,
            current_job=JobSnapshot.model_validate(latest) if latest else None,
            error_count=error_count,
            low_confidence_facts_count=low_confidence,
            unanalyzed_chapters=unanalyzed,
        )


__all__ = [
    "JobManager",
]
