"""Repository层"""

from .base import BaseRepository
from .chapter_repository import ChapterRepository
from .change_log_repository import KnowledgeChangeLogRepository
from .content_hash_repository import ContentHashRepository
from .dependency_repository import DependencyEdgeRepository
from .knowledge_repository import NarrativeElementRepository
from .processing_job_repository import ProcessingJobRepository
from .semantic_chunk_repository import SemanticChunkRepository
from .synthesized_entity_repository import SynthesizedEntityRepository

__all__ = [
    "BaseRepository",
    "ChapterRepository",
    "ContentHashRepository",
    "DependencyEdgeRepository",
    "KnowledgeChangeLogRepository",
    "NarrativeElementRepository",
    "ProcessingJobRepository",
    "SemanticChunkRepository",
    "SynthesizedEntityRepository",
]
