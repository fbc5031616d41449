"""
条目身份与合并规则

- identity_key：精确重复判定使用的结构化键，关系的人物对始终排序后比较（忽略方向）
- canonical_text：语义比对时用于向量化的规范文本
- merge_payloads：合并时的保守字段规则
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ...core.constants import SYNTHESIS_CATEGORIES, KnowledgeCategory
from ...models import NarrativeElement
from ...schemas.knowledge import coerce_item

logger = logging.getLogger(__name__)

IdentityKey = Tuple[str, ...]

# 合并时不参与通用规则的字段
_PROTECTED_DETAIL_KEYS = frozenset({
    "name", "event_name", "thread_name", "character_a_name", "character_b_name",
    "relationship_type", "event_type", "chapter_id",
})


def _norm(value: Optional[str]) -> str:
    return " ".join((value or "").split()).lower()


def is_granular(category: str) -> bool:
    """人物、世界观、主题按章节保留粒度记录，由合成服务跨章节汇总"""
    return KnowledgeCategory(category) in SYNTHESIS_CATEGORIES


def identity_key(item: Any) -> IdentityKey:
    """按类别计算精确重复键（粒度类别附带来源章节）"""
    category = KnowledgeCategory(item.category)
    if is_granular(category):
        return (category.value, _norm(item.name), *sorted(item.source_chapter_ids))
    if category == KnowledgeCategory.RELATIONSHIP:
        pair = sorted([_norm(item.character_a_name), _norm(item.character_b_name)])
        return (category.value, pair[0], pair[1], _norm(item.relationship_type))
    if category == KnowledgeCategory.TIMELINE_EVENT:
        return (category.value, _norm(item.event_name), _norm(item.event_type))
    if category == KnowledgeCategory.PLOT_THREAD:
        return (category.value, _norm(item.thread_name))
    if category == KnowledgeCategory.CHAPTER_SUMMARY:
        return (category.value, _norm(item.chapter_id))
    return (category.value, _norm(item.name))


def item_from_element(element: NarrativeElement):
    """
    把已存记录还原为类别模型

    Raises:
        ValidationError: 记录缺少类别必填字段（例如被手工改坏的 details）
    """
    data: Dict[str, Any] = dict(element.details or {})
    data.setdefault("name", element.name)
    data["description"] = element.description
    data["evidence"] = element.evidence
    data["confidence_score"] = element.confidence_score
    data["temporal_markers"] = list(element.temporal_markers or [])
    data["dependency_elements"] = list(element.dependency_elements or [])
    item = coerce_item(
        element.category,
        data,
        source_chapter_ids=element.source_chapter_ids or [],
        default_confidence=element.confidence_score,
        low_confidence_threshold=0.0,
    )
    item.is_flagged = element.is_flagged
    return item


def element_identity_key(element: NarrativeElement) -> IdentityKey:
    """已存记录的精确重复键，无法还原时退回 (类别, 名称)"""
    try:
        return identity_key(item_from_element(element))
    except (ValidationError, TypeError):
        logger.debug("记录无法还原为类别模型，按名称计算身份键: element_id=%s", element.id)
        return (element.category, _norm(element.name))


def canonical_text(item: Any) -> str:
    """条目的规范文本：类别、名称、子类别、描述、类别关键字段"""
    parts = [f"{item.category}: {item.display_name}"]
    if item.subcategory:
        parts.append(f"type: {item.subcategory}")
    if item.description_text:
        parts.append(item.description_text)
    for key in ("traits", "characters_involved", "key_events", "examples"):
        values = getattr(item, key, None)
        if values:
            parts.append(f"{key}: {', '.join(values)}")
    return "\n".join(parts)


def element_canonical_text(element: NarrativeElement) -> str:
    try:
        return canonical_text(item_from_element(element))
    except (ValidationError, TypeError):
        lines = [f"{element.category}: {element.name}"]
        if element.subcategory:
            lines.append(f"type: {element.subcategory}")
        if element.description:
            lines.append(element.description)
        return "\n".join(lines)


def item_snapshot(item: Any) -> Dict[str, Any]:
    """用于提示词与审计日志的条目快照"""
    return item.model_dump(exclude={"is_flagged"}, exclude_none=True)


def element_snapshot(element: NarrativeElement) -> Dict[str, Any]:
    return {
        "id": element.id,
        "name": element.name,
        "description": element.description,
        "subcategory": element.subcategory,
        "evidence": element.evidence,
        "details": dict(element.details or {}),
        "confidence_score": element.confidence_score,
        "source_chapter_ids": list(element.source_chapter_ids or []),
    }


def element_from_item(project_id: str, item: Any) -> NarrativeElement:
    """构造待保存的新记录"""
    return NarrativeElement(
        project_id=project_id,
        category=item.category,
        name=item.display_name,
        description=item.description_text,
        subcategory=item.subcategory,
        evidence=item.evidence,
        details=item.details_payload(),
        confidence_score=item.confidence_score,
        source_chapter_ids=list(item.source_chapter_ids),
        temporal_markers=list(item.temporal_markers),
        dependency_elements=list(item.dependency_elements),
        is_flagged=item.is_flagged,
        extraction_method="llm_extraction",
    )


def _union(first: List[Any], second: List[Any]) -> List[Any]:
    result = list(first)
    for value in second:
        if value not in result:
            result.append(value)
    return result


def _concat_evidence(existing: Optional[str], incoming: Optional[str]) -> Optional[str]:
    if not incoming or (existing and incoming in existing):
        return existing
    if not existing:
        return incoming
    return f"{existing}\n{incoming}"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def merge_details(existing: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    """
    合并类别字段

    列表取并集，数值取较大值，文本保留已有值（已有值为空时采用新值），身份字段不变。
    """
    merged = dict(existing)
    for key, value in incoming.items():
        if value in (None, "", []):
            continue
        current = merged.get(key)
        if key in _PROTECTED_DETAIL_KEYS:
            continue
        if current in (None, "", []):
            merged[key] = value
        elif isinstance(current, list) and isinstance(value, list):
            merged[key] = _union(current, value)
        elif _is_number(current) and _is_number(value):
            merged[key] = max(current, value)
        elif isinstance(current, str) and isinstance(value, str) and key in ("evidence", "summary_long"):
            merged[key] = _concat_evidence(current, value)
    return merged


def merge_payloads(
    existing: NarrativeElement,
    incoming: Any,
    proposed: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    计算合并后的字段值（不修改 existing）

    - 证据拼接，数值取较大值，列表取并集
    - 描述保持原值，只有新条目或裁决给出的合并描述更长时才替换
    """
    incoming_description = incoming.description_text
    proposed = proposed or {}
    proposed_description = proposed.get("description")
    candidates = [d for d in (incoming_description, proposed_description) if isinstance(d, str) and d.strip()]

    description = existing.description
    for candidate in candidates:
        if len(candidate) > len(description or ""):
            description = candidate

    details = merge_details(existing.details or {}, incoming.details_payload())
    proposed_details = proposed.get("details")
    if isinstance(proposed_details, dict):
        details = merge_details(details, proposed_details)

    return {
        "description": description,
        "evidence": _concat_evidence(existing.evidence, incoming.evidence),
        "details": details,
        "subcategory": existing.subcategory or incoming.subcategory,
        "confidence_score": max(existing.confidence_score, incoming.confidence_score),
        "source_chapter_ids": _union(existing.source_chapter_ids or [], incoming.source_chapter_ids),
        "temporal_markers": _union(existing.temporal_markers or [], incoming.temporal_markers),
        "dependency_elements": _union(existing.dependency_elements or [], incoming.dependency_elements),
    }


__all__ = [
    "IdentityKey",
    "is_granular",
    "identity_key",
    "element_identity_key",
    "item_from_element",
    "canonical_text",
    "element_canonical_text",
    "item_snapshot",
    "element_snapshot",
    "element_from_item",
    "merge_details",
    "merge_payloads",
]
