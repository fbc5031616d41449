"""
依赖注入模块

补全与嵌入的调度器在进程内共享，保证跨请求的调用间隔；
其余服务按请求构建，绑定当前数据库会话。
"""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.session import get_session
from ..exceptions import LLMConfigurationError
from ..services.analysis_service import AnalysisService
from ..services.embedding_service import EmbeddingProvider, EmbeddingService, OpenAIEmbeddingProvider
from ..services.job_manager import JobManager
from ..services.llm_service import CompletionClient, LLMService, OpenAICompletionClient
from ..services.queue import RateLimitedScheduler
from ..services.synthesis_service import SynthesisService
from .config import settings
from .pipeline_config import PipelineConfig

logger = logging.getLogger(__name__)


@lru_cache
def get_pipeline_config() -> PipelineConfig:
    return PipelineConfig.from_settings(settings)


@lru_cache
def get_completion_scheduler() -> RateLimitedScheduler:
    return RateLimitedScheduler("completion", get_pipeline_config().extraction_delay_seconds)


@lru_cache
def get_embedding_scheduler() -> RateLimitedScheduler:
    return RateLimitedScheduler("embedding", get_pipeline_config().embedding_min_interval_seconds)


@lru_cache
def get_completion_client() -> CompletionClient:
    """
    补全客户端

    Raises:
        LLMConfigurationError: 未配置 API Key
    """
    return OpenAICompletionClient.from_settings(settings)


@lru_cache
def get_embedding_provider() -> Optional[EmbeddingProvider]:
    """嵌入客户端；未配置时返回 None，嵌入服务改用模拟向量"""
    try:
        return OpenAIEmbeddingProvider.from_settings(settings)
    except LLMConfigurationError as exc:
        logger.warning("嵌入服务未配置，将使用模拟向量: %s", exc.detail)
        return None


def build_analysis_service(
    session: AsyncSession,
    *,
    completion_client: Optional[CompletionClient] = None,
    embedding_provider: Optional[EmbeddingProvider] = None,
    config: Optional[PipelineConfig] = None,
) -> AnalysisService:
    """按配置装配分析服务（请求处理与后台任务共用）"""
    config = config or get_pipeline_config()
    llm_service = LLMService(
        completion_client or get_completion_client(),
        get_completion_scheduler(),
        max_retries=settings.llm_max_retries,
    )
    embedding_service = EmbeddingService(
        embedding_provider if embedding_provider is not None else get_embedding_provider(),
        get_embedding_scheduler(),
        dimension=settings.embedding_dimension,
        max_retries=settings.embedding_max_retries,
    )
    return AnalysisService(
        session,
        llm_service=llm_service,
        embedding_service=embedding_service,
        config=config,
    )


async def get_analysis_service(
    session: AsyncSession = Depends(get_session),
) -> AnalysisService:
    return build_analysis_service(session)


async def get_job_manager(
    session: AsyncSession = Depends(get_session),
) -> JobManager:
    config = get_pipeline_config()
    return JobManager(session, config=config.jobs, dedup_config=config.dedup)


async def get_synthesis_service(
    session: AsyncSession = Depends(get_session),
) -> SynthesisService:
    """只读视图不需要补全服务"""
    return SynthesisService(session, None)
