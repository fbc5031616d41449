"""
章节相似度引擎

对章节分块做向量化并与项目内已有分块比较，给出三档建议：
- ≥ skip_threshold：内容几乎重复，跳过抽取，只把本章关联到已有元素并提升置信度
- ≥ enhanced_dedup_threshold：继续抽取，但去重阶段强制语义比对
- 其他：正常抽取
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.constants import RecommendedAction
from ..core.pipeline_config import SimilarityConfig
from ..models import SemanticChunk
from ..repositories import (
    KnowledgeChangeLogRepository,
    NarrativeElementRepository,
    SemanticChunkRepository,
)
from ..utils.vector_utils import cosine_similarity
from .chunking import ChunkResult
from .embedding_service import EmbeddingService

logger = logging.getLogger(__name__)


@dataclass
class SimilarChunk:
    """与查询向量相似的已存分块"""

    chunk_id: int
    chapter_id: str
    chunk_index: int
    similarity: float
    preview: str = ""
    content_hash: str = ""
    simulated: bool = False


@dataclass
class SimilarityAssessment:
    """章节相似度评估结果"""

    should_skip_extraction: bool
    similarity_score: float
    recommended_action: RecommendedAction
    reasoning: str
    similar_chunks: List[SimilarChunk] = field(default_factory=list)

    @property
    def force_semantic_dedup(self) -> bool:
        return self.recommended_action == RecommendedAction.PROCEED_WITH_ENHANCED_DEDUP


class SimilarityEngine:
    """分块向量化、相似检索与章节分级"""

    def __init__(
        self,
        session: AsyncSession,
        embedding_service: EmbeddingService,
        config: Optional[SimilarityConfig] = None,
    ):
        self.session = session
        self.embedding_service = embedding_service
        self.config = config or SimilarityConfig()
        self.chunk_repo = SemanticChunkRepository(session)
        self.element_repo = NarrativeElementRepository(session)
        self.change_log = KnowledgeChangeLogRepository(session)

    # ------------------------------------------------------------------
    # 向量化
    # ------------------------------------------------------------------
    async def embed_chunks(
        self,
        project_id: str,
        chapter_id: str,
        chunks: Sequence[ChunkResult],
        previous_chunks: Optional[Sequence[SemanticChunk]] = None,
    ) -> List[SemanticChunk]:
        """
        为分块生成向量并构造待保存的 SemanticChunk

        (chunk_index, content_hash) 未变化且已有向量的分块直接复用旧向量。
        """
        reusable: Dict[tuple, SemanticChunk] = {
            (old.chunk_index, old.content_hash): old
            for old in (previous_chunks or [])
            if old.embedding
        }

        rows: List[SemanticChunk] = []
        reused = 0
        for chunk in chunks:
            old = reusable.get((chunk.index, chunk.content_hash))
            if old is not None:
                vector, model, simulated = list(old.embedding), old.embedding_model, old.embedding_simulated
                reused += 1
            else:
                result = await self.embedding_service.embed(chunk.content)
                vector, model, simulated = result.vector, result.model, result.simulated

            rows.append(SemanticChunk(
                chapter_id=chapter_id,
                project_id=project_id,
                chunk_index=chunk.index,
                start_position=chunk.start_position,
                end_position=chunk.end_position,
                content=chunk.content,
                content_hash=chunk.content_hash,
                embedding=vector,
                embedding_model=model,
                embedding_simulated=simulated,
                named_entities=list(chunk.named_entities),
                entity_types=list(chunk.entity_types),
                discourse_markers=list(chunk.discourse_markers),
                dialogue_present=chunk.dialogue_present,
                dialogue_speakers=list(chunk.dialogue_speakers),
                breakpoint_score=chunk.breakpoint_score,
                breakpoint_reasons=list(chunk.breakpoint_reasons),
            ))

        logger.info(
            "章节分块向量化完成: chapter_id=%s chunks=%d reused=%d",
            chapter_id, len(rows), reused,
        )
        return rows

    async def save_chunks(self, chapter_id: str, rows: List[SemanticChunk]) -> List[SemanticChunk]:
        return await self.chunk_repo.replace_for_chapter(chapter_id, rows)

    # ------------------------------------------------------------------
    # 检索与评估
    # ------------------------------------------------------------------
    async def find_similar(
        self,
        project_id: str,
        vector: Sequence[float],
        *,
        k: Optional[int] = None,
        threshold: Optional[float] = None,
        exclude_chapter_id: Optional[str] = None,
    ) -> List[SimilarChunk]:
        """返回相似度不低于阈值的前 k 个已存分块（维度不一致的分块跳过）"""
        k = k if k is not None else self.config.search_top_k
        threshold = threshold if threshold is not None else self.config.search_threshold

        query = np.asarray(vector, dtype=np.float64)
        candidates = [
            chunk for chunk in await self.chunk_repo.list_embedded(project_id, exclude_chapter_id)
            if len(chunk.embedding) == query.shape[0]
        ]
        if not candidates:
            return []

        matrix = np.asarray([chunk.embedding for chunk in candidates], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, matrix @ query / norms, 0.0)
        scores = np.clip(scores, -1.0, 1.0)

        ranked = sorted(range(len(candidates)), key=lambda i: (-scores[i], i))
        results: List[SimilarChunk] = []
        for i in ranked:
            score = float(scores[i])
            if score < threshold or len(results) >= k:
                break
            chunk = candidates[i]
            results.append(SimilarChunk(
                chunk_id=chunk.id,
                chapter_id=chunk.chapter_id,
                chunk_index=chunk.chunk_index,
                similarity=score,
                preview=chunk.content[:120],
                content_hash=chunk.content_hash,
                simulated=bool(chunk.embedding_simulated),
            ))
        return results

    async def assess_chapter(
        self,
        project_id: str,
        chapter_id: str,
        chunks: Sequence[SemanticChunk],
    ) -> SimilarityAssessment:
        """
        按章节内各分块的最大相似度分级

        任一端为模拟向量的匹配不携带语义信息，除非两块内容哈希相同，否则不参与分级与关联。
        """
        similar: Dict[int, SimilarChunk] = {}
        untrusted = 0
        for chunk in chunks:
            query_simulated = bool(chunk.embedding_simulated)
            for match in await self.find_similar(project_id, chunk.embedding, exclude_chapter_id=chapter_id):
                if (query_simulated or match.simulated) and match.content_hash != chunk.content_hash:
                    untrusted += 1
                    continue
                existing = similar.get(match.chunk_id)
                if existing is None or match.similarity > existing.similarity:
                    similar[match.chunk_id] = match

        if untrusted:
            logger.warning(
                "忽略基于模拟向量的相似匹配: chapter_id=%s ignored=%d",
                chapter_id, untrusted,
            )

        matches = sorted(similar.values(), key=lambda m: (-m.similarity, m.chapter_id, m.chunk_index))
        best = matches[0].similarity if matches else 0.0

        if best >= self.config.skip_threshold:
            action = RecommendedAction.SKIP_AND_LINK
            reasoning = f"最高相似度 {best:.2f} ≥ {self.config.skip_threshold:.2f}，内容与已处理章节几乎一致"
        elif best >= self.config.enhanced_dedup_threshold:
            action = RecommendedAction.PROCEED_WITH_ENHANCED_DEDUP
            reasoning = f"最高相似度 {best:.2f}，存在大量重叠内容，去重阶段启用语义比对"
        else:
            action = RecommendedAction.PROCEED_NORMAL
            reasoning = f"最高相似度 {best:.2f}，按新内容处理" if matches else "未找到相似分块，按新内容处理"

        logger.info(
            "章节相似度评估: chapter_id=%s best=%.3f action=%s matches=%d",
            chapter_id, best, action.value, len(matches),
        )
        return SimilarityAssessment(
            should_skip_extraction=action == RecommendedAction.SKIP_AND_LINK,
            similarity_score=best,
            recommended_action=action,
            reasoning=reasoning,
            similar_chunks=matches,
        )

    async def link_and_boost(
        self,
        project_id: str,
        chapter_id: str,
        similar_chunks: Sequence[SimilarChunk],
    ) -> int:
        """
        把近似重复章节关联到已有元素

        来源章节包含匹配章节的元素追加本章为来源，并提升置信度（封顶 1.0）；
        用户编辑过的元素只追加来源，不修改其他字段。已关联过本章的元素不再重复提升。

        Returns:
            新关联的元素数量
        """
        matched_chapters = sorted({
            match.chapter_id for match in similar_chunks
            if match.similarity >= self.config.skip_threshold
        })
        if not matched_chapters:
            return 0

        linked = 0
        for element in await self.element_repo.list_with_chapter(project_id, matched_chapters):
            sources = list(element.source_chapter_ids or [])
            if chapter_id in sources:
                continue

            element.source_chapter_ids = sources + [chapter_id]
            before = element.confidence_score
            if not element.user_edited:
                element.confidence_score = min(1.0, before + self.config.confidence_boost)

            await self.change_log.record(
                project_id=project_id,
                category=element.category,
                change_type="linked",
                element_id=element.id,
                reason=f"章节 {chapter_id} 与章节 {', '.join(matched_chapters)} 内容近似",
                confidence=element.confidence_score,
                payload={
                    "chapter_id": chapter_id,
                    "matched_chapters": matched_chapters,
                    "confidence_before": before,
                    "user_edited": element.user_edited,
                },
            )
            linked += 1

        await self.session.flush()
        logger.info(
            "近似章节关联完成: chapter_id=%s matched=%s linked_elements=%d",
            chapter_id, matched_chapters, linked,
        )
        return linked


__all__ = [
    "SimilarChunk",
    "SimilarityAssessment",
    "SimilarityEngine",
    "cosine_similarity",
]
