"""
抽取结果的结构化模型

补全服务返回的 JSON 结构不可信，这里按类别定义带标签的联合类型，
所有数据在入库前都经过 coerce_item / coerce_extraction 的校验与兜底。
"""

import logging
from typing import Annotated, Any, Dict, Iterable, Iterator, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator

from ..core.constants import CATEGORY_KEYS, EXTRACTION_KEYS, KnowledgeCategory

logger = logging.getLogger(__name__)


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)):
        return str(value)
    return None


def _as_text_list(value: Any) -> List[str]:
    """把字符串/列表/空值统一转为去重后的字符串列表"""
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    result: List[str] = []
    for entry in value:
        text = _as_text(entry)
        if text and text not in result:
            result.append(text)
    return result


class _ExtractedItemBase(BaseModel):
    """所有类别共有的字段"""

    confidence_score: float = Field(default=0.5, ge=0.0, le=1.0, description="抽取置信度")
    evidence: Optional[str] = Field(default=None, description="原文证据")
    temporal_markers: List[str] = Field(default_factory=list, description="时间标记")
    dependency_elements: List[str] = Field(default_factory=list, description="依赖的其他元素名称")
    source_chapter_ids: List[str] = Field(default_factory=list, description="来源章节")
    is_flagged: bool = False

    @model_validator(mode="before")
    @classmethod
    def _flatten_details(cls, data: Any) -> Any:
        # 模型常把类别特有字段嵌套在 details 中，展开到顶层（顶层优先）
        if isinstance(data, dict) and isinstance(data.get("details"), dict):
            merged = dict(data["details"])
            merged.update({k: v for k, v in data.items() if k != "details"})
            return merged
        return data

    @field_validator("evidence", mode="before")
    @classmethod
    def _coerce_evidence(cls, value: Any) -> Optional[str]:
        if isinstance(value, (list, tuple)):
            return "\n".join(_as_text_list(value)) or None
        return _as_text(value)

    @field_validator("temporal_markers", "dependency_elements", "source_chapter_ids", mode="before")
    @classmethod
    def _coerce_lists(cls, value: Any) -> List[str]:
        return _as_text_list(value)

    @property
    def display_name(self) -> str:
        raise NotImplementedError

    @property
    def description_text(self) -> Optional[str]:
        return getattr(self, "description", None)

    @property
    def subcategory(self) -> Optional[str]:
        return None

    def details_payload(self) -> Dict[str, Any]:
        """类别特有字段，原样写入 NarrativeElement.details"""
        shared = set(_ExtractedItemBase.model_fields) | {"category", "description"}
        return {
            key: value
            for key, value in self.model_dump().items()
            if key not in shared and value not in (None, [], "")
        }


class CharacterItem(_ExtractedItemBase):
    category: Literal["character"] = "character"
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    role: Optional[str] = Field(default=None, description="protagonist/antagonist/supporting")
    traits: List[str] = Field(default_factory=list)
    goals: Optional[str] = None
    related_characters: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("related_characters", "relationships"),
    )

    @field_validator("name", "description", "role", "goals", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        if isinstance(value, (list, tuple)):
            return ", ".join(_as_text_list(value)) or None
        return _as_text(value)

    @field_validator("traits", "related_characters", mode="before")
    @classmethod
    def _list(cls, value: Any) -> List[str]:
        return _as_text_list(value)

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def subcategory(self) -> Optional[str]:
        return self.role


class RelationshipItem(_ExtractedItemBase):
    category: Literal["relationship"] = "relationship"
    character_a_name: str = Field(..., min_length=1)
    character_b_name: str = Field(..., min_length=1)
    relationship_type: str = Field(default="unspecified", min_length=1)
    relationship_strength: Optional[float] = Field(default=None, description="1-10 关系强度")
    relationship_current_status: Optional[str] = None
    description: Optional[str] = None

    @field_validator(
        "character_a_name", "character_b_name", "relationship_current_status", "description",
        mode="before",
    )
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)

    @field_validator("relationship_type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> str:
        return _as_text(value) or "unspecified"

    @field_validator("relationship_strength", mode="before")
    @classmethod
    def _strength(cls, value: Any) -> Optional[float]:
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    @property
    def display_name(self) -> str:
        return f"{self.character_a_name} & {self.character_b_name}"

    @property
    def subcategory(self) -> Optional[str]:
        return self.relationship_type


class TimelineEventItem(_ExtractedItemBase):
    category: Literal["timeline_event"] = "timeline_event"
    event_name: str = Field(..., min_length=1, validation_alias=AliasChoices("event_name", "name"))
    event_type: str = Field(default="scene")
    event_description: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("event_description", "description", "event_summary"),
    )
    characters_involved: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("characters_involved", "characters_involved_names"),
    )
    date_or_time_reference: Optional[str] = None
    significance: Optional[str] = None
    chronological_order: Optional[int] = Field(default=None, description="模型给出的顺序提示")

    @field_validator("event_name", "event_description", "date_or_time_reference", "significance", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)

    @field_validator("event_type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> str:
        return _as_text(value) or "scene"

    @field_validator("characters_involved", mode="before")
    @classmethod
    def _list(cls, value: Any) -> List[str]:
        return _as_text_list(value)

    @field_validator("chronological_order", mode="before")
    @classmethod
    def _order(cls, value: Any) -> Optional[int]:
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    @property
    def display_name(self) -> str:
        return self.event_name

    @property
    def description_text(self) -> Optional[str]:
        return self.event_description

    @property
    def subcategory(self) -> Optional[str]:
        return self.event_type


class PlotThreadItem(_ExtractedItemBase):
    category: Literal["plot_thread"] = "plot_thread"
    thread_name: str = Field(..., min_length=1, validation_alias=AliasChoices("thread_name", "name"))
    thread_type: str = Field(default="main")
    thread_status: str = Field(default="active")
    key_events: List[str] = Field(default_factory=list)
    characters_involved: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("characters_involved", "characters_involved_names"),
    )
    description: Optional[str] = None

    @field_validator("thread_name", "description", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)

    @field_validator("thread_type", "thread_status", mode="before")
    @classmethod
    def _enum_text(cls, value: Any, info) -> str:
        return _as_text(value) or ("main" if info.field_name == "thread_type" else "active")

    @field_validator("key_events", "characters_involved", mode="before")
    @classmethod
    def _list(cls, value: Any) -> List[str]:
        return _as_text_list(value)

    @property
    def display_name(self) -> str:
        return self.thread_name

    @property
    def subcategory(self) -> Optional[str]:
        return self.thread_type


class PlotPointItem(_ExtractedItemBase):
    category: Literal["plot_point"] = "plot_point"
    name: str = Field(..., min_length=1, validation_alias=AliasChoices("name", "title"))
    description: Optional[str] = None
    significance: Optional[str] = None
    plot_thread_name: Optional[str] = None
    characters_involved: List[str] = Field(default_factory=list)

    @field_validator("name", "description", "significance", "plot_thread_name", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)

    @field_validator("characters_involved", mode="before")
    @classmethod
    def _list(cls, value: Any) -> List[str]:
        return _as_text_list(value)

    @property
    def display_name(self) -> str:
        return self.name


class ChapterSummaryItem(_ExtractedItemBase):
    category: Literal["chapter_summary"] = "chapter_summary"
    chapter_id: str = Field(..., min_length=1)
    title: Optional[str] = None
    summary_short: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("summary_short", "summary", "description"),
    )
    summary_long: Optional[str] = None
    key_events: List[str] = Field(default_factory=list)
    primary_focus: Optional[str] = None

    @field_validator("chapter_id", "title", "summary_short", "summary_long", "primary_focus", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)

    @field_validator("key_events", mode="before")
    @classmethod
    def _list(cls, value: Any) -> List[str]:
        return _as_text_list(value)

    @property
    def display_name(self) -> str:
        return self.title or f"章节摘要 {self.chapter_id}"

    @property
    def description_text(self) -> Optional[str]:
        return self.summary_short or self.summary_long


class WorldElementItem(_ExtractedItemBase):
    category: Literal["world_building"] = "world_building"
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    element_type: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("element_type", "type"),
        description="location/object/concept/rule",
    )
    significance: Optional[str] = None

    @field_validator("name", "description", "element_type", "significance", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def subcategory(self) -> Optional[str]:
        return self.element_type


class ThemeItem(_ExtractedItemBase):
    category: Literal["theme"] = "theme"
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    examples: List[str] = Field(default_factory=list)

    @field_validator("name", "description", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)

    @field_validator("examples", mode="before")
    @classmethod
    def _list(cls, value: Any) -> List[str]:
        return _as_text_list(value)

    @property
    def display_name(self) -> str:
        return self.name


ExtractedItem = Annotated[
    Union[
        CharacterItem,
        RelationshipItem,
        TimelineEventItem,
        PlotThreadItem,
        PlotPointItem,
        ChapterSummaryItem,
        WorldElementItem,
        ThemeItem,
    ],
    Field(discriminator="category"),
]

_ITEM_ADAPTER: TypeAdapter = TypeAdapter(ExtractedItem)


class RejectedItem(BaseModel):
    """未通过校验的候选条目"""

    category: KnowledgeCategory
    reason: str
    raw: Any = None


class ExtractionBatch(BaseModel):
    """一次抽取得到的按类别分组的条目"""

    characters: List[CharacterItem] = Field(default_factory=list)
    relationships: List[RelationshipItem] = Field(default_factory=list)
    timeline_events: List[TimelineEventItem] = Field(default_factory=list)
    plot_threads: List[PlotThreadItem] = Field(default_factory=list)
    plot_points: List[PlotPointItem] = Field(default_factory=list)
    chapter_summaries: List[ChapterSummaryItem] = Field(default_factory=list)
    world_building: List[WorldElementItem] = Field(default_factory=list)
    themes: List[ThemeItem] = Field(default_factory=list)
    rejected: List[RejectedItem] = Field(default_factory=list)

    def items(self) -> Iterator[Any]:
        for key in EXTRACTION_KEYS:
            yield from getattr(self, key)

    @property
    def total(self) -> int:
        return sum(len(getattr(self, key)) for key in EXTRACTION_KEYS)

    def counts(self) -> Dict[str, int]:
        return {key: len(getattr(self, key)) for key in EXTRACTION_KEYS}

    def extend(self, other: "ExtractionBatch") -> None:
        for key in EXTRACTION_KEYS:
            setattr(self, key, getattr(self, key) + getattr(other, key))
        self.rejected = self.rejected + other.rejected


def _coerce_confidence(value: Any, default: float) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return default
    if confidence != confidence:  # NaN
        return default
    return max(0.0, min(1.0, confidence))


def coerce_item(
    category: KnowledgeCategory,
    raw: Any,
    *,
    source_chapter_ids: Optional[Iterable[str]] = None,
    default_confidence: float = 0.5,
    low_confidence_threshold: float = 0.7,
):
    """
    把单条原始数据转换为类别模型

    Raises:
        ValidationError: 缺少必填字段等无法修复的问题
        TypeError: 条目不是对象
    """
    if not isinstance(raw, dict):
        raise TypeError(f"条目必须是对象，实际为 {type(raw).__name__}")

    category = KnowledgeCategory(category)
    data = dict(raw)
    data["category"] = category.value
    data["confidence_score"] = _coerce_confidence(data.get("confidence_score"), default_confidence)

    # 模型声明的来源只能收窄调用方给定的章节范围，不能扩大
    claimed = _as_text_list(data.get("source_chapter_ids"))
    supplied = _as_text_list(list(source_chapter_ids or []))
    if supplied:
        chapters = [chapter for chapter in claimed if chapter in supplied] or supplied
    else:
        chapters = claimed
    data["source_chapter_ids"] = list(dict.fromkeys(chapters))

    if category == KnowledgeCategory.CHAPTER_SUMMARY and not _as_text(data.get("chapter_id")):
        if len(data["source_chapter_ids"]) == 1:
            data["chapter_id"] = data["source_chapter_ids"][0]

    item = _ITEM_ADAPTER.validate_python(data)
    if item.confidence_score < low_confidence_threshold:
        item.is_flagged = True
    return item


def coerce_extraction(
    payload: Any,
    target_categories: Iterable[KnowledgeCategory],
    *,
    source_chapter_ids: Optional[Iterable[str]] = None,
    default_confidence: float = 0.5,
    low_confidence_threshold: float = 0.7,
) -> ExtractionBatch:
    """
    把一次抽取响应转换为 ExtractionBatch

    非对象响应返回空结果；非数组的类别值视为空；单条失败只记录原因，不影响同批其他条目。
    """
    batch = ExtractionBatch()
    if not isinstance(payload, dict):
        if payload is not None:
            logger.warning("抽取响应不是对象，按空结果处理: type=%s", type(payload).__name__)
        return batch

    chapters = list(source_chapter_ids or [])
    for category in target_categories:
        category = KnowledgeCategory(category)
        key = CATEGORY_KEYS[category]
        values = payload.get(key)
        if values is None:
            continue
        if not isinstance(values, list):
            logger.warning("抽取响应中 %s 不是数组，已忽略: type=%s", key, type(values).__name__)
            continue

        accepted = []
        for raw in values:
            try:
                accepted.append(coerce_item(
                    category,
                    raw,
                    source_chapter_ids=chapters,
                    default_confidence=default_confidence,
                    low_confidence_threshold=low_confidence_threshold,
                ))
            except (ValidationError, TypeError) as exc:
                reason = _rejection_reason(exc)
                logger.info("丢弃无效条目: category=%s reason=%s", category.value, reason)
                batch.rejected.append(RejectedItem(category=category, reason=reason, raw=raw))
        setattr(batch, key, accepted)

    return batch


def _rejection_reason(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        parts = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()))
            parts.append(f"{location}: {error.get('msg')}")
        return "; ".join(parts) or str(exc)
    return str(exc)


__all__ = [
    "CharacterItem",
    "RelationshipItem",
    "TimelineEventItem",
    "PlotThreadItem",
    "PlotPointItem",
    "ChapterSummaryItem",
    "WorldElementItem",
    "ThemeItem",
    "ExtractedItem",
    "ExtractionBatch",
    "RejectedItem",
    "coerce_item",
    "coerce_extraction",
]
