"""
保守去重服务

每条候选依次经过：
1. 精确重复判定（结构化身份键），命中则丢弃新条目，已有记录保持不变
   人物、世界观、主题按章节保留粒度记录，不做语义合并，由合成服务汇总
2. 同类别语义比对（规范文本向量的余弦相似度，按类别阈值）
3. 合并裁决（merge / discard / keep_distinct）
4. 用户编辑保护：命中的已有记录被用户编辑过时拒绝自动处理，转为人工确认
每一步的结果都写入 knowledge_change_log。
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ...core.constants import DedupResolution, KnowledgeCategory, MergeAction
from ...core.pipeline_config import DedupConfig, SimilarityConfig
from ...exceptions import ManualResolutionRequired
from ...models import NarrativeElement
from ...repositories import KnowledgeChangeLogRepository, NarrativeElementRepository
from ...schemas.analysis import DedupSummary
from ...schemas.knowledge import ExtractionBatch
from ...utils.exception_helpers import log_exception
from ...utils.vector_utils import cosine_similarity
from ..embedding_service import EmbeddingService
from .identity import (
    canonical_text,
    element_canonical_text,
    element_from_item,
    element_identity_key,
    element_snapshot,
    identity_key,
    is_granular,
    item_snapshot,
    merge_payloads,
)
from .merge_decision_engine import MergeDecision, MergeDecisionEngine

logger = logging.getLogger(__name__)


@dataclass
class DedupOutcome:
    """单条候选的去重结果"""

    resolution: DedupResolution
    category: str
    name: str
    element_id: Optional[str] = None      # 新建或被合并的记录
    matched_id: Optional[str] = None      # 命中的已有记录
    similarity: Optional[float] = None
    decision: Optional[MergeDecision] = None
    reason: str = ""


@dataclass
class DedupReport:
    """一批候选的去重汇总"""

    outcomes: List[DedupOutcome] = field(default_factory=list)
    rejected: int = 0

    def count(self, resolution: DedupResolution) -> int:
        return sum(1 for outcome in self.outcomes if outcome.resolution == resolution)

    @property
    def stored(self) -> int:
        return self.count(DedupResolution.STORED)

    @property
    def errors(self) -> int:
        return self.count(DedupResolution.FAILED)

    @property
    def stored_categories(self) -> List[str]:
        """有新记录写入的类别"""
        return sorted({o.category for o in self.outcomes if o.resolution == DedupResolution.STORED})

    def extend(self, other: "DedupReport") -> None:
        self.outcomes.extend(other.outcomes)
        self.rejected += other.rejected

    def to_summary(self) -> DedupSummary:
        return DedupSummary(
            stored=self.stored,
            exact_duplicates=self.count(DedupResolution.EXACT_DUPLICATE),
            merged=self.count(DedupResolution.MERGED),
            discarded=self.count(DedupResolution.DISCARDED),
            manual_resolution=self.count(DedupResolution.MANUAL_RESOLUTION),
            rejected=self.rejected,
            errors=self.errors,
        )


class DeduplicationService:
    """保守去重与合并"""

    def __init__(
        self,
        session: AsyncSession,
        embedding_service: EmbeddingService,
        merge_engine: MergeDecisionEngine,
        *,
        similarity_config: Optional[SimilarityConfig] = None,
        dedup_config: Optional[DedupConfig] = None,
    ):
        self.session = session
        self.embedding_service = embedding_service
        self.merge_engine = merge_engine
        self.similarity_config = similarity_config or SimilarityConfig()
        self.dedup_config = dedup_config or DedupConfig()
        self.element_repo = NarrativeElementRepository(session)
        self.change_log = KnowledgeChangeLogRepository(session)
        # (element_id, 规范文本哈希) -> 向量
        self._vector_cache: Dict[Tuple[str, str], List[float]] = {}

    # ------------------------------------------------------------------
    # 对外接口
    # ------------------------------------------------------------------
    async def process_batch(
        self,
        project_id: str,
        batch: ExtractionBatch,
        *,
        force_semantic: bool = False,
    ) -> DedupReport:
        """
        逐条处理一批候选；单条失败只记录并计数，不影响其他条目

        每条候选在独立的 SAVEPOINT 中写入，写库失败只回滚该条，会话仍可继续使用。
        """
        report = DedupReport(rejected=len(batch.rejected))
        for item in batch.items():
            try:
                async with self.session.begin_nested():
                    outcome = await self.process_item(project_id, item, force_semantic=force_semantic)
            except Exception as exc:
                log_exception(
                    exc, "去重处理", logger,
                    project_id=project_id, category=item.category, name=item.display_name,
                )
                outcome = DedupOutcome(
                    resolution=DedupResolution.FAILED,
                    category=item.category,
                    name=item.display_name,
                    reason=f"{type(exc).__name__}: {exc}",
                )
            report.outcomes.append(outcome)

        logger.info(
            "批次去重完成: project_id=%s stored=%d duplicates=%d merged=%d discarded=%d manual=%d errors=%d",
            project_id,
            report.stored,
            report.count(DedupResolution.EXACT_DUPLICATE),
            report.count(DedupResolution.MERGED),
            report.count(DedupResolution.DISCARDED),
            report.count(DedupResolution.MANUAL_RESOLUTION),
            report.errors,
        )
        return report

    async def process_item(
        self,
        project_id: str,
        item,
        *,
        force_semantic: bool = False,
    ) -> DedupOutcome:
        """
        处理单条候选

        Args:
            force_semantic: 章节与已有内容高度相似时启用，语义候选阈值放宽到检索阈值
        """
        category = KnowledgeCategory(item.category)
        existing = await self.element_repo.list_by_category(project_id, category.value)

        # 1. 精确重复
        key = identity_key(item)
        for element in existing:
            if element_identity_key(element) == key:
                return await self._record(project_id, DedupOutcome(
                    resolution=DedupResolution.EXACT_DUPLICATE,
                    category=category.value,
                    name=item.display_name,
                    matched_id=element.id,
                    reason="身份键完全一致，丢弃新条目",
                ), item)

        if is_granular(category):
            element = await self._store_new(project_id, item)
            return await self._record(project_id, DedupOutcome(
                resolution=DedupResolution.STORED,
                category=category.value,
                name=item.display_name,
                element_id=element.id,
                reason="按章节保留粒度记录，由知识合成跨章节汇总",
            ), item)

        # 2. 语义候选
        match, similarity = await self._best_semantic_match(item, existing, force_semantic)
        if match is None:
            element = await self._store_new(project_id, item)
            return await self._record(project_id, DedupOutcome(
                resolution=DedupResolution.STORED,
                category=category.value,
                name=item.display_name,
                element_id=element.id,
                similarity=similarity,
                reason="未找到相似的已有记录",
            ), item)

        # 3. 裁决
        decision = await self.merge_engine.evaluate(category.value, item_snapshot(item), element_snapshot(match))

        # 4. 用户编辑保护
        if match.user_edited:
            conflict = ManualResolutionRequired(category.value, match.id)
            logger.info("%s: similarity=%.3f arbiter=%s", conflict.detail, similarity, decision.action.value)
            return await self._record(project_id, DedupOutcome(
                resolution=DedupResolution.MANUAL_RESOLUTION,
                category=category.value,
                name=item.display_name,
                matched_id=match.id,
                similarity=similarity,
                decision=decision,
                reason=conflict.detail,
            ), item)

        # 5. 执行裁决
        if decision.action == MergeAction.MERGE:
            await self._merge_into(match, item, decision)
            resolution, element_id = DedupResolution.MERGED, match.id
        elif decision.action == MergeAction.DISCARD:
            resolution, element_id = DedupResolution.DISCARDED, None
        else:
            element = await self._store_new(project_id, item)
            resolution, element_id = DedupResolution.STORED, element.id

        return await self._record(project_id, DedupOutcome(
            resolution=resolution,
            category=category.value,
            name=item.display_name,
            element_id=element_id,
            matched_id=match.id,
            similarity=similarity,
            decision=decision,
            reason=decision.reason,
        ), item)

    # ------------------------------------------------------------------
    # 内部实现
    # ------------------------------------------------------------------
    async def _vector_for_element(self, element: NarrativeElement) -> List[float]:
        text = element_canonical_text(element)
        cache_key = (element.id, hashlib.sha256(text.encode("utf-8")).hexdigest())
        if cache_key not in self._vector_cache:
            self._vector_cache[cache_key] = (await self.embedding_service.embed(text)).vector
        return self._vector_cache[cache_key]

    async def _best_semantic_match(
        self,
        item,
        existing: Sequence[NarrativeElement],
        force_semantic: bool,
    ) -> Tuple[Optional[NarrativeElement], Optional[float]]:
        if not existing:
            return None, None

        threshold = self.similarity_config.threshold_for(KnowledgeCategory(item.category))
        if force_semantic:
            threshold = min(threshold, self.similarity_config.search_threshold)

        query = (await self.embedding_service.embed(canonical_text(item))).vector
        best: Optional[NarrativeElement] = None
        best_score: Optional[float] = None
        for element in existing:
            vector = await self._vector_for_element(element)
            if len(vector) != len(query):
                continue
            score = cosine_similarity(query, vector)
            if best_score is None or score > best_score:
                best, best_score = element, score

        if best is None or best_score < threshold:
            return None, best_score
        return best, best_score

    async def _store_new(self, project_id: str, item) -> NarrativeElement:
        return await self.element_repo.add(element_from_item(project_id, item))

    async def _merge_into(self, element: NarrativeElement, item, decision: MergeDecision) -> None:
        values = merge_payloads(element, item, decision.merged_data)
        # JSON 列整体赋值
        for key, value in values.items():
            setattr(element, key, value)
        await self.session.flush()

    async def _record(self, project_id: str, outcome: DedupOutcome, item) -> DedupOutcome:
        payload = {
            "name": outcome.name,
            "matched_id": outcome.matched_id,
            "similarity": outcome.similarity,
            "source_chapter_ids": list(item.source_chapter_ids),
        }
        if outcome.decision is not None:
            payload["arbiter_action"] = outcome.decision.action.value
            payload["arbiter_fallback"] = outcome.decision.fallback
        if outcome.resolution in (DedupResolution.MANUAL_RESOLUTION, DedupResolution.DISCARDED):
            payload["candidate"] = item_snapshot(item)

        await self.change_log.record(
            project_id=project_id,
            category=outcome.category,
            change_type=outcome.resolution.value,
            element_id=outcome.element_id or outcome.matched_id,
            reason=outcome.reason,
            confidence=outcome.decision.confidence if outcome.decision else item.confidence_score,
            payload=payload,
        )
        return outcome


__all__ = [
    "DedupOutcome",
    "DedupReport",
    "DeduplicationService",
]
