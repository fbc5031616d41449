"""集中导出 ORM 模型，确保 SQLAlchemy 元数据在初始化时被正确加载。"""

from .chapter import Chapter
from .knowledge import KnowledgeChangeLog, NarrativeElement, SynthesizedEntity
from .processing import ContentHash, DependencyEdge, ProcessingJob, SemanticChunk

__all__ = [
    "Chapter",
    "ContentHash",
    "DependencyEdge",
    "KnowledgeChangeLog",
    "NarrativeElement",
    "ProcessingJob",
    "SemanticChunk",
    "SynthesizedEntity",
]
