import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ..core.state_machine import JobState
from ..db.base import Base
from .mixins import BIGINT_PK_TYPE, TimestampsMixin, utc_now


class ContentHash(TimestampsMixin, Base):
    """章节内容哈希，只反映最近一次分析成功时的内容。"""

    __tablename__ = "content_hashes"

    id: Mapped[int] = mapped_column(BIGINT_PK_TYPE, primary_key=True, autoincrement=True)
    chapter_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    project_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    content_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    paragraph_hashes: Mapped[list] = mapped_column(JSON, default=list)
    is_low_confidence: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    needs_reprocessing: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processing_version: Mapped[str] = mapped_column(String(16), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    last_processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


class SemanticChunk(TimestampsMixin, Base):
    """章节语义分块，按 (chapter_id, chunk_index) 追加或整体替换。"""

    __tablename__ = "semantic_chunks"

    id: Mapped[int] = mapped_column(BIGINT_PK_TYPE, primary_key=True, autoincrement=True)
    chapter_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    start_position: Mapped[int] = mapped_column(Integer, nullable=False)
    end_position: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    embedding: Mapped[Optional[list]] = mapped_column(JSON)
    embedding_model: Mapped[Optional[str]] = mapped_column(String(128))
    embedding_simulated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    named_entities: Mapped[list] = mapped_column(JSON, default=list)
    entity_types: Mapped[list] = mapped_column(JSON, default=list)
    discourse_markers: Mapped[list] = mapped_column(JSON, default=list)
    dialogue_present: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    dialogue_speakers: Mapped[list] = mapped_column(JSON, default=list)
    breakpoint_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    breakpoint_reasons: Mapped[list] = mapped_column(JSON, default=list)

    __table_args__ = (
        UniqueConstraint("chapter_id", "chunk_index", name="uq_semantic_chunk_index"),
    )


class ProcessingJob(TimestampsMixin, Base):
    """分析任务，状态转换由 JobManager 统一控制。"""

    __tablename__ = "processing_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False, default="project_analysis")
    state: Mapped[str] = mapped_column(String(16), nullable=False, default=JobState.PENDING.value)
    current_step: Mapped[Optional[str]] = mapped_column(String(255))
    total_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    completed_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    error_details: Mapped[Optional[dict]] = mapped_column(JSON)
    result: Mapped[Optional[dict]] = mapped_column(JSON)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    heartbeat_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_processing_jobs_project_state", "project_id", "state"),
    )


class DependencyEdge(Base):
    """有向依赖边：source 变化时 dependent 需要重新处理，且 dependent 在时间上晚于 source。"""

    __tablename__ = "dependency_edges"

    id: Mapped[int] = mapped_column(BIGINT_PK_TYPE, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    source_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    dependent_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    dependent_type: Mapped[str] = mapped_column(String(32), nullable=False)
    dependency_type: Mapped[str] = mapped_column(String(32), nullable=False, default="must_occur_after")
    strength: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    note: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("source_id", "dependent_id", "dependency_type", name="uq_dependency_edge"),
    )
