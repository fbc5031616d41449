import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Float, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from ..db.base import Base
from .mixins import BIGINT_PK_TYPE, ReviewFlagsMixin, TimestampsMixin, utc_now


def _new_id() -> str:
    return str(uuid.uuid4())


class NarrativeElement(ReviewFlagsMixin, TimestampsMixin, Base):
    """
    叙事元素（多态单表）

    category 区分人物、关系、时间线事件、情节线、情节点、章节摘要、世界观、主题，
    各类别特有字段存放在 details 中。JSON 列不追踪原地修改，更新时必须整体赋值。
    """

    __tablename__ = "narrative_elements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    subcategory: Mapped[Optional[str]] = mapped_column(String(64))
    evidence: Mapped[Optional[str]] = mapped_column(Text)
    details: Mapped[dict] = mapped_column(JSON, default=dict)

    confidence_score: Mapped[float] = mapped_column(Float, default=0.5, nullable=False)
    source_chapter_ids: Mapped[list] = mapped_column(JSON, default=list)
    extraction_method: Mapped[str] = mapped_column(String(32), default="llm_extraction")

    temporal_markers: Mapped[list] = mapped_column(JSON, default=list)
    dependency_elements: Mapped[list] = mapped_column(JSON, default=list)
    chronological_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    chronological_confidence: Mapped[float] = mapped_column(Float, default=0.5, nullable=False)

    __table_args__ = (
        Index("ix_narrative_elements_project_category", "project_id", "category"),
        Index("ix_narrative_elements_project_category_name", "project_id", "category", "name"),
    )


class SynthesizedEntity(TimestampsMixin, Base):
    """同名实体跨章节合成后的视图（每个项目/类别/名称一条）。"""

    __tablename__ = "synthesized_entities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    subcategory: Mapped[Optional[str]] = mapped_column(String(64))
    evidence: Mapped[Optional[str]] = mapped_column(Text)
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    confidence_score: Mapped[float] = mapped_column(Float, default=0.5, nullable=False)
    is_flagged: Mapped[bool] = mapped_column(default=False, nullable=False)
    is_verified: Mapped[bool] = mapped_column(default=False, nullable=False)
    source_chapter_ids: Mapped[list] = mapped_column(JSON, default=list)
    source_record_ids: Mapped[list] = mapped_column(JSON, default=list)
    synthesis_meta: Mapped[dict] = mapped_column(JSON, default=dict)

    __table_args__ = (
        UniqueConstraint("project_id", "category", "name", name="uq_synthesized_entity"),
    )


class KnowledgeChangeLog(Base):
    """去重/合并/关联等自动操作的审计记录，只追加不修改。"""

    __tablename__ = "knowledge_change_log"

    id: Mapped[int] = mapped_column(BIGINT_PK_TYPE, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    element_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    change_type: Mapped[str] = mapped_column(String(48), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    confidence: Mapped[Optional[float]] = mapped_column(Float)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )
