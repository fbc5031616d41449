"""
项目分析主服务

协调增量知识抽取的完整流程：

阶段:
1. thinking   - 缺口检测 + 章节变更检测（编辑过的章节使其下游依赖章节一并失效）
2. analyzing  - 变更章节分块、向量化、与已有分块比对分级
3. extracting - 缺口补全、变更章节增量抽取、保守去重，章节成功后才提交内容哈希
4. 协调       - 时间线排序与知识合成

章节按序号逐章处理，每章开始前检查取消状态并刷新心跳。
单章失败时回滚该章尚未提交的写入，保留旧知识与旧哈希，并以 [extraction_failed] 标记上报；
任何失败都会让任务以带结构化原因的 failed 结束。
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.constants import GAP_CATEGORY_MAP, GapCategory, KnowledgeCategory
from ..core.pipeline_config import PipelineConfig
from ..core.state_machine import JobState
from ..exceptions import AnalysisCancelledError
from ..models import ProcessingJob
from ..models.mixins import utc_now
from ..repositories import (
    ChapterRepository,
    NarrativeElementRepository,
    ProcessingJobRepository,
    SemanticChunkRepository,
)
from ..schemas.analysis import AnalysisResult, AnalysisStatus, CancelResponse, SynthesizedView
from ..utils.exception_helpers import log_exception
from .chronology_service import ChronologyService
from .chunking import ChunkResult, NarrativeChunker
from .content_hash_service import ContentHashService
from .deduplication import DedupReport, DeduplicationService, MergeDecisionEngine
from .dependency_manager import DependencyManager
from .embedding_service import EmbeddingService
from .extraction_service import ExtractionService
from .gap_detector import GapDetector, GapFillPlan
from .job_manager import JobManager
from .llm_service import LLMService
from .prompt_builder import PromptBuilder
from .similarity_engine import SimilarityAssessment, SimilarityEngine
from .synthesis_service import SynthesisService

logger = logging.getLogger(__name__)

EXTRACTION_FAILED_MARKER = "[extraction_failed]"
STORE_FAILED_MARKER = "[store_failed]"

STEP_THINKING = "检测知识缺口与章节变更"
STEP_ANALYZING = "章节分块与相似度评估"
STEP_EXTRACTING = "知识抽取与去重"
STEP_COORDINATING = "时间线排序与知识合成"


@dataclass(frozen=True)
class ChapterText:
    """章节正文快照（回滚后仍可安全访问）"""

    id: str
    number: int
    title: Optional[str]
    content: str


@dataclass
class _ChapterPlan:
    chapter: ChapterText
    chunks: List[ChunkResult]
    assessment: SimilarityAssessment


class AnalysisService:
    """
    项目分析主服务

    所有外部能力（补全、嵌入）通过构造参数注入；阈值集中在 PipelineConfig。
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        llm_service: LLMService,
        embedding_service: EmbeddingService,
        config: Optional[PipelineConfig] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        chunker: Optional[NarrativeChunker] = None,
        clock: Callable = utc_now,
    ):
        self.session = session
        self.config = config or PipelineConfig()
        self.llm_service = llm_service
        self.embedding_service = embedding_service
        prompt_builder = prompt_builder or PromptBuilder()

        self.chapter_repo = ChapterRepository(session)
        self.element_repo = NarrativeElementRepository(session)
        self.job_repo = ProcessingJobRepository(session)
        self.chunk_repo = SemanticChunkRepository(session)

        self.hashes = ContentHashService(session, clock=clock)
        self.chunker = chunker or NarrativeChunker(self.config.chunking)
        self.similarity = SimilarityEngine(session, embedding_service, self.config.similarity)
        self.gaps = GapDetector(session)
        self.extraction = ExtractionService(
            llm_service,
            prompt_builder=prompt_builder,
            batch_tokens=self.config.extraction_batch_tokens,
            dedup_config=self.config.dedup,
            temperature=self.config.extraction_temperature,
        )
        self.dedup = DeduplicationService(
            session,
            embedding_service,
            MergeDecisionEngine(
                llm_service,
                prompt_builder=prompt_builder,
                config=self.config.dedup,
                temperature=self.config.merge_temperature,
            ),
            similarity_config=self.config.similarity,
            dedup_config=self.config.dedup,
        )
        self.dependencies = DependencyManager(session)
        self.chronology = ChronologyService(session)
        self.synthesis = SynthesisService(
            session,
            llm_service,
            prompt_builder=prompt_builder,
            temperature=self.config.synthesis_temperature,
        )
        self.jobs = JobManager(session, config=self.config.jobs, dedup_config=self.config.dedup, clock=clock)

    # ------------------------------------------------------------------
    # 对外接口
    # ------------------------------------------------------------------
    async def start_job(self, project_id: str) -> ProcessingJob:
        """只创建任务，由后台调用 analyze_project(job_id=...) 执行"""
        return await self.jobs.create_job(project_id)

    async def analyze_project(
        self,
        project_id: str,
        force_re_extraction: bool = False,
        selected_categories: Optional[Iterable[GapCategory]] = None,
        *,
        job_id: Optional[str] = None,
    ) -> AnalysisResult:
        """
        执行项目分析

        Args:
            project_id: 项目ID
            force_re_extraction: 忽略内容哈希，全部章节重新抽取
            selected_categories: 只对这些类别做缺口补全
            job_id: 已由 start_job 创建的任务

        Returns:
            AnalysisResult: 流水线失败时任务进入 failed，结果中仍包含已完成部分的统计

        Raises:
            ConflictError: 项目已有进行中的任务
        """
        job = await self.jobs.get_job(job_id) if job_id else await self.jobs.create_job(project_id)
        # 回滚后 ORM 对象过期，后续只使用主键字符串
        job_id = job.id
        result = AnalysisResult(job_id=job_id)
        errors: Dict[str, str] = {}

        try:
            gaps_attempted = await self._run(
                job_id, project_id, force_re_extraction, selected_categories, result, errors,
            )
        except AnalysisCancelledError:
            await self.session.rollback()
            result.cancelled = True
            logger.info("项目分析已取消: project_id=%s job_id=%s", project_id, job_id)
            return result
        except Exception as exc:
            await self.session.rollback()
            log_exception(exc, "项目分析", logger, project_id=project_id, job_id=job_id)
            await self._fail_job(job_id, {
                "reason": "pipeline_error",
                "error_type": type(exc).__name__,
                "message": str(exc),
                "failed_chapters": list(result.failed_chapters),
            })
            return result

        if await self.jobs.is_cancelled(job_id):
            result.cancelled = True
            return result

        if result.failed_chapters or errors:
            await self._fail_job(job_id, {
                "reason": "extraction_failed",
                "failed_chapters": list(result.failed_chapters),
                "errors": errors,
                "summary": result.model_dump(),
            })
        else:
            await self.jobs.complete(job_id, {**result.model_dump(), "gaps_attempted": gaps_attempted})

        logger.info(
            "项目分析结束: project_id=%s job_id=%s extracted=%d processed=%d skipped=%d linked=%d failed=%d",
            project_id, job_id, result.total_extracted, result.chapters_processed,
            result.chapters_skipped, result.chapters_linked, len(result.failed_chapters),
        )
        return result

    async def get_analysis_status(self, project_id: str) -> AnalysisStatus:
        return await self.jobs.get_status(project_id)

    async def cancel(self, job_id: str) -> CancelResponse:
        return await self.jobs.request_cancel(job_id)

    async def get_synthesized_view(self, project_id: str, category: Optional[str] = None) -> SynthesizedView:
        return await self.synthesis.get_synthesized_view(project_id, category)

    # ------------------------------------------------------------------
    # 流水线
    # ------------------------------------------------------------------
    async def _run(
        self,
        job_id: str,
        project_id: str,
        force_re_extraction: bool,
        selected_categories: Optional[Iterable[GapCategory]],
        result: AnalysisResult,
        errors: Dict[str, str],
    ) -> List[str]:
        """返回本次已尝试（或沿用上次尝试结果）的缺口类别"""
        # ========== 阶段1: 缺口与变更检测 ==========
        await self._enter(job_id, JobState.THINKING, STEP_THINKING)
        chapters = await self._load_chapters(project_id)
        gaps = await self.gaps.detect_gaps(project_id)
        result.gaps_detected = {gap.value: empty for gap, empty in gaps.items()}

        changed_ids = await self._detect_changed(project_id, chapters, force_re_extraction)
        changed = [chapter for chapter in chapters if chapter.id in changed_ids]
        unchanged = [chapter for chapter in chapters if chapter.id not in changed_ids]
        result.chapters_skipped = len(unchanged)

        plan = GapDetector.plan_gap_fill(gaps, selected_categories)
        plan, carried = await self._drop_attempted_gaps(project_id, plan, bool(changed) or force_re_extraction)
        await self.jobs.advance(job_id, STEP_THINKING)

        # ========== 阶段2: 分块与相似度评估 ==========
        await self._enter(job_id, JobState.ANALYZING, STEP_ANALYZING)
        plans: List[_ChapterPlan] = []
        for chapter in changed:
            await self._check_cancelled(job_id)
            plans.append(await self._analyze_chapter(project_id, chapter))
            await self.jobs.heartbeat(job_id, f"{STEP_ANALYZING}: 第{chapter.number}章")
        await self.jobs.advance(job_id, STEP_ANALYZING)

        # ========== 阶段3: 抽取与去重 ==========
        await self._enter(job_id, JobState.EXTRACTING, STEP_EXTRACTING)
        per_chapter_categories = list(KnowledgeCategory)
        if plan.context_dependent:
            per_chapter_categories = [
                category for category in per_chapter_categories
                if category not in {GAP_CATEGORY_MAP[gap] for gap in plan.context_dependent}
            ]

        await self._fill_context_gaps(job_id, project_id, chapters, plan, per_chapter_categories, bool(changed), result, errors)
        await self._fill_standalone_gaps(job_id, project_id, unchanged, plan, result, errors)

        for chapter_plan in plans:
            await self._extract_chapter(job_id, project_id, chapter_plan, per_chapter_categories, result)

        after = await self.gaps.detect_gaps(project_id)
        result.gaps_filled = [gap.value for gap in plan.categories if gaps.get(gap) and not after.get(gap)]
        await self.jobs.advance(job_id, STEP_EXTRACTING)

        # ========== 阶段4: 时间线与合成 ==========
        await self._check_cancelled(job_id)
        await self.jobs.heartbeat(job_id, STEP_COORDINATING)
        result.ordered_elements = len(await self.chronology.assign_order(project_id))
        result.synthesized = len(await self.synthesis.synthesize_all(project_id))
        await self.session.commit()
        await self.jobs.advance(job_id, STEP_COORDINATING)

        return sorted({gap.value for gap in plan.categories} | carried)

    async def _enter(self, job_id: str, state: JobState, step: str) -> None:
        await self._check_cancelled(job_id)
        await self.jobs.transition(job_id, state, step=step)

    async def _check_cancelled(self, job_id: str) -> None:
        if await self.jobs.is_cancelled(job_id):
            raise AnalysisCancelledError("项目分析", job_id)

    async def _fail_job(self, job_id: str, details: Dict[str, Any]) -> None:
        if await self.jobs.is_cancelled(job_id):
            return
        await self.jobs.fail(job_id, details)

    async def _load_chapters(self, project_id: str) -> List[ChapterText]:
        chapters = await self.chapter_repo.list_for_project(project_id)
        return [
            ChapterText(id=c.id, number=c.chapter_number, title=c.title, content=c.content or "")
            for c in sorted(chapters, key=lambda c: (c.chapter_number, c.id))
        ]

    async def _detect_changed(
        self,
        project_id: str,
        chapters: List[ChapterText],
        force_re_extraction: bool,
    ) -> Set[str]:
        """
        返回需要重新抽取的章节

        内容被编辑过（已有哈希且不同）的章节，其来源元素的下游依赖所在章节也一并重新处理。
        """
        if force_re_extraction:
            return {chapter.id for chapter in chapters if chapter.content.strip()}

        changed: Set[str] = set()
        edited: List[str] = []
        for chapter in chapters:
            if not chapter.content.strip():
                continue
            if not await self.hashes.has_changed(chapter.id, chapter.content):
                continue
            changed.add(chapter.id)
            record = await self.hashes.get_record(chapter.id)
            if (
                record is not None
                and not record.needs_reprocessing
                and not record.is_low_confidence
                and record.content_hash != self.hashes.generate_hash(chapter.content)
            ):
                edited.append(chapter.id)

        if edited:
            sources = await self.element_repo.list_with_chapter(project_id, edited)
            marked = await self.dependencies.invalidate_downstream(project_id, [e.id for e in sources])
            known = {chapter.id for chapter in chapters if chapter.content.strip()}
            changed.update(cid for cid in marked if cid in known)

        logger.info(
            "章节变更检测: project_id=%s total=%d changed=%d edited=%d",
            project_id, len(chapters), len(changed), len(edited),
        )
        return changed

    async def _drop_attempted_gaps(
        self,
        project_id: str,
        plan: GapFillPlan,
        content_changed: bool,
    ):
        """内容没有变化时，上次成功任务已经尝试过的缺口不再重复抽取"""
        if content_changed or plan.is_empty:
            return plan, set()

        last = await self.job_repo.get_last_completed(project_id)
        attempted = set((last.result or {}).get("gaps_attempted", [])) if last else set()
        if not attempted:
            return plan, set()

        kept = GapFillPlan(
            context_dependent=[gap for gap in plan.context_dependent if gap.value not in attempted],
            standalone=[gap for gap in plan.standalone if gap.value not in attempted],
        )
        carried = {gap.value for gap in plan.categories if gap.value in attempted}
        if carried:
            logger.info("内容未变化，沿用上次缺口补全结果: project_id=%s gaps=%s", project_id, sorted(carried))
        return kept, carried

    async def _analyze_chapter(self, project_id: str, chapter: ChapterText) -> _ChapterPlan:
        embed_fn = None
        if self.config.chunking.use_sentence_embeddings:
            async def embed_fn(text: str) -> List[float]:
                return (await self.embedding_service.embed(text)).vector

        chunks = await self.chunker.chunk(chapter.content, embed_fn)
        previous = await self.chunk_repo.list_by_chapter(chapter.id)
        rows = await self.similarity.embed_chunks(project_id, chapter.id, chunks, previous)
        await self.similarity.save_chunks(chapter.id, rows)
        assessment = await self.similarity.assess_chapter(project_id, chapter.id, rows)
        return _ChapterPlan(chapter=chapter, chunks=chunks, assessment=assessment)

    async def _linked_chapters_committed(self, assessment: SimilarityAssessment, failed: Set[str]) -> bool:
        """近似章节全部已成功分析时才允许跳过抽取"""
        matched = {
            match.chapter_id for match in assessment.similar_chunks
            if match.similarity >= self.config.similarity.skip_threshold
        }
        for chapter_id in matched:
            if chapter_id in failed:
                return False
            record = await self.hashes.get_record(chapter_id)
            if record is None or record.needs_reprocessing:
                return False
        return bool(matched)

    async def _extract_chapter(
        self,
        job_id: str,
        project_id: str,
        plan: _ChapterPlan,
        categories: List[KnowledgeCategory],
        result: AnalysisResult,
    ) -> None:
        chapter = plan.chapter
        await self._check_cancelled(job_id)
        await self.jobs.heartbeat(job_id, f"{STEP_EXTRACTING}: 第{chapter.number}章")

        failed_ids = {marker.split(" ", 1)[0] for marker in result.failed_chapters}
        try:
            if plan.assessment.should_skip_extraction and await self._linked_chapters_committed(
                plan.assessment, failed_ids
            ):
                await self.similarity.link_and_boost(project_id, chapter.id, plan.assessment.similar_chunks)
                result.chapters_linked += 1
                report = DedupReport()
            else:
                context = await ExtractionService.load_existing_context(self.element_repo, project_id)
                batch = await self.extraction.extract(
                    [chunk.content for chunk in plan.chunks] or [chapter.content],
                    categories,
                    existing_context=context,
                    source_chapter_ids=[chapter.id],
                )
                report = await self.dedup.process_batch(
                    project_id, batch, force_semantic=plan.assessment.force_semantic_dedup,
                )
                await self._link_dependencies(project_id, report)
                result.total_extracted += batch.total
                result.dedup = _add_summary(result.dedup, report)

            if report.errors:
                # 已写入的条目保留，哈希不提交，下次重新抽取
                await self.session.commit()
                result.failed_chapters.append(f"{chapter.id} {STORE_FAILED_MARKER}")
                logger.warning(
                    "章节部分条目写入失败，保留旧哈希: chapter_id=%s errors=%d",
                    chapter.id, report.errors,
                )
                return

            await self.hashes.commit(chapter.id, chapter.content, project_id=project_id)
            await self.session.commit()
            result.chapters_processed += 1
        except AnalysisCancelledError:
            raise
        except Exception as exc:
            await self.session.rollback()
            log_exception(exc, "章节知识抽取", logger, project_id=project_id, chapter_id=chapter.id)
            result.failed_chapters.append(f"{chapter.id} {EXTRACTION_FAILED_MARKER}")

    async def _fill_context_gaps(
        self,
        job_id: str,
        project_id: str,
        chapters: List[ChapterText],
        plan: GapFillPlan,
        per_chapter_categories: List[KnowledgeCategory],
        has_changed: bool,
        result: AnalysisResult,
        errors: Dict[str, str],
    ) -> None:
        """需要跨章节上下文的缺口：用全部章节的聚合正文抽取"""
        texts = [chapter.content for chapter in chapters if chapter.content.strip()]
        if not plan.context_dependent or not texts:
            return

        categories = [
            category for category in GapFillPlan.knowledge_categories(plan.context_dependent)
            if not (has_changed and category in per_chapter_categories)
        ]
        await self._check_cancelled(job_id)
        await self.jobs.heartbeat(job_id, f"{STEP_EXTRACTING}: 补全 {', '.join(g.value for g in plan.context_dependent)}")
        try:
            context = await ExtractionService.load_existing_context(self.element_repo, project_id)
            batch = await self.extraction.extract(
                texts,
                categories,
                existing_context=context,
                source_chapter_ids=[chapter.id for chapter in chapters if chapter.content.strip()],
            )
            report = await self.dedup.process_batch(project_id, batch)
            await self._link_dependencies(project_id, report)
            await self.session.commit()
            result.total_extracted += batch.total
            result.dedup = _add_summary(result.dedup, report)
        except Exception as exc:
            await self.session.rollback()
            log_exception(exc, "跨章节缺口补全", logger, project_id=project_id)
            for gap in plan.context_dependent:
                errors[f"gap:{gap.value}"] = f"{type(exc).__name__}: {exc}"

    async def _fill_standalone_gaps(
        self,
        job_id: str,
        project_id: str,
        chapters: List[ChapterText],
        plan: GapFillPlan,
        result: AnalysisResult,
        errors: Dict[str, str],
    ) -> None:
        """
        可逐章抽取的缺口：只处理本次未变更的章节

        变更章节在增量抽取中已覆盖全部类别。
        """
        if not plan.standalone:
            return

        categories = GapFillPlan.knowledge_categories(plan.standalone)
        for chapter in chapters:
            if not chapter.content.strip():
                continue
            await self._check_cancelled(job_id)
            await self.jobs.heartbeat(job_id, f"{STEP_EXTRACTING}: 补全第{chapter.number}章")
            try:
                batch = await self.extraction.extract(
                    chapter.content,
                    categories,
                    existing_context=await ExtractionService.load_existing_context(self.element_repo, project_id),
                    source_chapter_ids=[chapter.id],
                )
                report = await self.dedup.process_batch(project_id, batch)
                await self._link_dependencies(project_id, report)
                await self.session.commit()
                result.total_extracted += batch.total
                result.dedup = _add_summary(result.dedup, report)
            except Exception as exc:
                await self.session.rollback()
                log_exception(exc, "章节缺口补全", logger, project_id=project_id, chapter_id=chapter.id)
                result.failed_chapters.append(f"{chapter.id} {EXTRACTION_FAILED_MARKER}")
                errors[chapter.id] = f"{type(exc).__name__}: {exc}"

    async def _link_dependencies(self, project_id: str, report: DedupReport) -> int:
        """把新写入或合并记录中 dependency_elements 引用的元素物化为依赖边"""
        element_ids = [outcome.element_id for outcome in report.outcomes if outcome.element_id]
        if not element_ids:
            return 0

        by_name: Dict[str, str] = {}
        for element in await self.element_repo.list_by_project(project_id):
            by_name.setdefault(element.name.strip().lower(), element.id)

        linked = 0
        for element_id in dict.fromkeys(element_ids):
            element = await self.element_repo.get_by_id(element_id)
            if element is None:
                continue
            for name in element.dependency_elements or []:
                source_id = by_name.get(str(name).strip().lower())
                if source_id is None or source_id == element.id:
                    continue
                await self.dependencies.create(project_id, source_id, element.id, note=f"引用: {name}")
                linked += 1
        return linked


def _add_summary(summary, report: DedupReport):
    incoming = report.to_summary()
    return summary.model_copy(update={
        field: getattr(summary, field) + getattr(incoming, field)
        for field in type(summary).model_fields
    })


__all__ = [
    "AnalysisService",
    "ChapterText",
    "EXTRACTION_FAILED_MARKER",
    "STORE_FAILED_MARKER",
]
