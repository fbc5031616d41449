"""
项目分析路由

启动增量知识抽取、查询任务状态、取消任务、读取合成视图。
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from ...core.constants import SYNTHESIS_CATEGORIES, KnowledgeCategory
from ...core.dependencies import (
    build_analysis_service,
    get_analysis_service,
    get_job_manager,
    get_synthesis_service,
)
from ...exceptions import InvalidParameterError
from ...schemas.analysis import (
    AnalysisStatus,
    AnalyzeRequest,
    CancelResponse,
    SynthesizedView,
)
from ...services.analysis_service import AnalysisService
from ...services.job_manager import JobManager
from ...services.synthesis_service import SynthesisService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["项目分析"])


@router.post("/api/projects/{project_id}/analysis")
async def analyze_project(
    project_id: str,
    background_tasks: BackgroundTasks,
    request: Optional[AnalyzeRequest] = None,
    background: bool = Query(default=False, description="在后台执行，立即返回任务ID"),
    service: AnalysisService = Depends(get_analysis_service),
):
    """
    分析项目

    默认同步执行并返回统计结果；background=true 时只创建任务，
    进度通过状态接口查询。

    Raises:
        ConflictError: 项目已有进行中的任务（409）
    """
    request = request or AnalyzeRequest()

    if not background:
        return await service.analyze_project(
            project_id,
            force_re_extraction=request.force_re_extraction,
            selected_categories=request.selected_categories,
        )

    job = await service.start_job(project_id)
    job_id = job.id

    # 后台任务需要独立的数据库会话
    async def run_analysis():
        from ...db.session import AsyncSessionLocal

        async with AsyncSessionLocal() as bg_session:
            try:
                await build_analysis_service(bg_session).analyze_project(
                    project_id,
                    force_re_extraction=request.force_re_extraction,
                    selected_categories=request.selected_categories,
                    job_id=job_id,
                )
            except Exception as exc:
                logger.exception("后台分析任务异常退出: project_id=%s job_id=%s error=%s", project_id, job_id, exc)

    background_tasks.add_task(run_analysis)
    logger.info("项目 %s 的后台分析任务已启动: job_id=%s", project_id, job_id)

    return {
        "jobId": job_id,
        "status": "started",
        "message": "分析任务已启动，请通过状态接口查询进度",
    }


@router.get("/api/projects/{project_id}/analysis/status", response_model=AnalysisStatus)
async def get_analysis_status(
    project_id: str,
    jobs: JobManager = Depends(get_job_manager),
) -> AnalysisStatus:
    """获取分析状态（会先清理超时未心跳的任务）"""
    return await jobs.get_status(project_id)


@router.post("/api/analysis/jobs/{job_id}/cancel", response_model=CancelResponse)
async def cancel_analysis(
    job_id: str,
    jobs: JobManager = Depends(get_job_manager),
) -> CancelResponse:
    """取消任务；正在进行的外部调用完成后不再调度新的章节"""
    return await jobs.request_cancel(job_id)


@router.get("/api/projects/{project_id}/knowledge/synthesized", response_model=SynthesizedView)
async def get_synthesized_knowledge(
    project_id: str,
    category: Optional[str] = Query(default=None, description="character / world_building / theme"),
    synthesis: SynthesisService = Depends(get_synthesis_service),
) -> SynthesizedView:
    if category is not None and category not in {c.value for c in SYNTHESIS_CATEGORIES}:
        raise InvalidParameterError(
            f"不支持的合成类别: {category}，可选 {', '.join(c.value for c in SYNTHESIS_CATEGORIES)}",
            parameter="category",
        )
    return await synthesis.get_synthesized_view(
        project_id,
        KnowledgeCategory(category).value if category else None,
    )
