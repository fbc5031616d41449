from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..core.constants import GapCategory


class _CamelModel(BaseModel):
    """对外字段使用驼峰命名，内部仍按属性名访问。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class AnalyzeRequest(_CamelModel):
    """项目分析请求体"""

    force_re_extraction: bool = Field(default=False, description="忽略内容哈希，强制重新抽取全部章节")
    selected_categories: Optional[List[GapCategory]] = Field(
        default=None,
        description="只对这些类别做缺口补全，为空表示全部",
    )


class DedupSummary(_CamelModel):
    """一次分析中去重结果的汇总"""

    stored: int = 0
    exact_duplicates: int = 0
    merged: int = 0
    discarded: int = 0
    manual_resolution: int = 0
    rejected: int = 0
    errors: int = 0


class AnalysisResult(_CamelModel):
    """analyze_project 的返回值"""

    job_id: str
    total_extracted: int = 0
    gaps_detected: Dict[str, bool] = Field(default_factory=dict)
    gaps_filled: List[str] = Field(default_factory=list)
    chapters_processed: int = 0
    chapters_skipped: int = 0
    chapters_linked: int = 0
    failed_chapters: List[str] = Field(default_factory=list)
    cancelled: bool = False
    dedup: DedupSummary = Field(default_factory=DedupSummary)
    synthesized: int = 0
    ordered_elements: int = 0


class JobSnapshot(_CamelModel):
    """任务状态快照"""

    id: str
    project_id: str
    state: str
    current_step: Optional[str] = None
    total_steps: int
    completed_steps: int
    progress: float
    error_details: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class AnalysisStatus(_CamelModel):
    """项目分析状态"""

    is_processing: bool = False
    has_errors: bool = False
    current_job: Optional[JobSnapshot] = None
    error_count: int = 0
    low_confidence_facts_count: int = 0
    unanalyzed_chapters: int = 0


class CancelResponse(_CamelModel):
    job_id: str
    cancelled: bool
    state: str


class SynthesizedEntityOut(_CamelModel):
    id: str
    category: str
    name: str
    description: Optional[str] = None
    subcategory: Optional[str] = None
    evidence: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    confidence_score: float
    is_flagged: bool
    is_verified: bool
    source_chapter_ids: List[str] = Field(default_factory=list)
    source_record_ids: List[str] = Field(default_factory=list)


class GranularRecordOut(_CamelModel):
    id: str
    category: str
    name: str
    description: Optional[str] = None
    confidence_score: float
    is_flagged: bool
    is_verified: bool
    user_edited: bool
    source_chapter_ids: List[str] = Field(default_factory=list)


class SynthesizedView(_CamelModel):
    """合成视图：合成实体、原始粒度记录与来源映射"""

    synthesized_entities: List[SynthesizedEntityOut] = Field(default_factory=list)
    granular_records: List[GranularRecordOut] = Field(default_factory=list)
    source_attribution: Dict[str, List[str]] = Field(default_factory=dict)
