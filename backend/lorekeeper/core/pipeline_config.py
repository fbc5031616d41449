"""
流水线阈值配置

分块、相似度、去重、任务管理使用的所有经验阈值集中在这里，
通过构造参数传入各个服务，便于调参和测试。
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from .constants import KnowledgeCategory


@dataclass(frozen=True)
class ChunkingConfig:
    """语义分块配置"""

    min_tokens: int = 100
    max_tokens: int = 2000
    overlap_sentences: int = 2

    # 是否对候选断点句做嵌入比较（每句一次外部调用，默认关闭）
    use_sentence_embeddings: bool = False
    # 句子嵌入相似度低于此值视为语义断裂
    embedding_threshold: float = 0.6
    # 嵌入相似度下降最多贡献的分值
    embedding_drop_weight: float = 4.0

    # 各信号权重
    discourse_marker_weight: float = 3.0
    ner_shift_weight: float = 2.0
    dialogue_shift_weight: float = 1.0

    # 断点分数阈值
    eligible_cut: float = 2.0
    force_cut: float = 8.0
    max_score: float = 10.0

    # 估算 token：词数 × 1.3
    tokens_per_word: float = 1.3


@dataclass(frozen=True)
class SimilarityConfig:
    """相似度分级配置"""

    skip_threshold: float = 0.90
    enhanced_dedup_threshold: float = 0.80
    search_threshold: float = 0.70
    search_top_k: int = 5
    confidence_boost: float = 0.1
    embedding_dimension: int = 768

    type_thresholds: Dict[KnowledgeCategory, float] = field(default_factory=lambda: {
        KnowledgeCategory.RELATIONSHIP: 0.85,
        KnowledgeCategory.TIMELINE_EVENT: 0.75,
        KnowledgeCategory.PLOT_THREAD: 0.90,
    })
    default_type_threshold: float = 0.70

    def threshold_for(self, category: KnowledgeCategory) -> float:
        return self.type_thresholds.get(KnowledgeCategory(category), self.default_type_threshold)


@dataclass(frozen=True)
class DedupConfig:
    """去重与合并裁决配置"""

    default_confidence: float = 0.5
    low_confidence_threshold: float = 0.7
    # 裁决失败时的保守默认值
    fallback_decision_confidence: float = 0.5
    # 裁决返回非法置信度时的替代值
    invalid_confidence_substitute: float = 0.7


@dataclass(frozen=True)
class JobConfig:
    """处理任务配置"""

    stale_minutes: int = 5
    total_steps: int = 4


@dataclass(frozen=True)
class PipelineConfig:
    """整条流水线的阈值集合"""

    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    similarity: SimilarityConfig = field(default_factory=SimilarityConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    jobs: JobConfig = field(default_factory=JobConfig)
    extraction_delay_seconds: float = 1.0
    extraction_batch_tokens: int = 6000
    embedding_min_interval_seconds: float = 2.0
    extraction_temperature: float = 0.3
    merge_temperature: float = 0.1
    synthesis_temperature: float = 0.2

    @classmethod
    def from_settings(cls, settings: Optional["Settings"] = None) -> "PipelineConfig":
        """根据全局配置构建流水线配置"""
        if settings is None:
            from .config import settings as current_settings
            settings = current_settings

        return cls(
            chunking=ChunkingConfig(
                min_tokens=settings.chunk_min_tokens,
                max_tokens=settings.chunk_max_tokens,
                overlap_sentences=settings.chunk_overlap_sentences,
            ),
            similarity=SimilarityConfig(embedding_dimension=settings.embedding_dimension),
            jobs=JobConfig(stale_minutes=settings.job_stale_minutes),
            extraction_delay_seconds=settings.extraction_delay_seconds,
            extraction_batch_tokens=settings.extraction_batch_tokens,
            embedding_min_interval_seconds=settings.embedding_min_interval_seconds,
            extraction_temperature=settings.llm_extraction_temperature,
            merge_temperature=settings.llm_merge_temperature,
            synthesis_temperature=settings.llm_synthesis_temperature,
        )


__all__ = [
    "ChunkingConfig",
    "SimilarityConfig",
    "DedupConfig",
    "JobConfig",
    "PipelineConfig",
]
