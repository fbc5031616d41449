"""
时间线协调

解析元素的时间标记，按依赖关系调整顺序，最终给出稠密的 1..N 时间顺序：
- 排序键：数值顺序 → 类型优先级 → 置信度（高在前）→ 名称
- 依赖：dependent 的顺序严格大于其全部依赖的顺序，调整过的元素置信度至少为 0.7
- 依赖成环时按当前顺序断开并记录日志
"""

import heapq
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.constants import (
    CHRONOLOGY_CATEGORIES,
    CHRONOLOGY_DEFAULT_PRIORITY,
    CHRONOLOGY_TYPE_PRIORITY,
    KnowledgeCategory,
)
from ..models import NarrativeElement
from ..repositories import DependencyEdgeRepository, NarrativeElementRepository

logger = logging.getLogger(__name__)

SEQUENCE = "sequence"
ABSOLUTE = "absolute"
RELATIVE = "relative"

_SEQUENCE_PATTERN = re.compile(r"\b(chapter|scene|part|act)\s+(\d+)", re.IGNORECASE)
_SEQUENCE_CN_PATTERN = re.compile(r"第\s*(\d+)\s*[章幕节部]")
_ABSOLUTE_PATTERN = re.compile(r"\b(day|week|month|year|morning|afternoon|evening|night)s?\b", re.IGNORECASE)
_ABSOLUTE_CN_PATTERN = re.compile(r"[天日周月年]|早晨|清晨|上午|中午|下午|傍晚|夜晚|深夜")
_RELATIVE_PATTERN = re.compile(
    r"\b(before|after|during|while|then|next|later|earlier|first|last)\b", re.IGNORECASE
)
_RELATIVE_CN_PATTERN = re.compile(r"之前|之后|以后|随后|接着|同时|后来|最初|最后")

DEPENDENCY_CONFIDENCE_FLOOR = 0.7


@dataclass(frozen=True)
class TemporalMarker:
    """解析后的时间标记"""

    text: str
    type: str
    confidence: float
    order_hint: Optional[int] = None


@dataclass
class OrderedElement:
    """排序结果"""

    id: str
    name: str
    category: str
    order: int
    confidence: float


def parse_temporal_marker(marker: str) -> TemporalMarker:
    """序列标记 0.9（带顺序提示），绝对时间 0.8，相对时间 0.6，其他 0.4"""
    match = _SEQUENCE_PATTERN.search(marker) or _SEQUENCE_CN_PATTERN.search(marker)
    if match:
        return TemporalMarker(marker, SEQUENCE, 0.9, int(match.groups()[-1]))
    if _ABSOLUTE_PATTERN.search(marker) or _ABSOLUTE_CN_PATTERN.search(marker):
        return TemporalMarker(marker, ABSOLUTE, 0.8)
    if _RELATIVE_PATTERN.search(marker) or _RELATIVE_CN_PATTERN.search(marker):
        return TemporalMarker(marker, RELATIVE, 0.6)
    return TemporalMarker(marker, RELATIVE, 0.4)


def parse_temporal_markers(markers: Iterable[str]) -> List[TemporalMarker]:
    return [parse_temporal_marker(marker) for marker in markers if marker and str(marker).strip()]


def _type_priority(category: str) -> int:
    try:
        return CHRONOLOGY_TYPE_PRIORITY.get(KnowledgeCategory(category), CHRONOLOGY_DEFAULT_PRIORITY)
    except ValueError:
        return CHRONOLOGY_DEFAULT_PRIORITY


def _initial_order(element: NarrativeElement, markers: Sequence[TemporalMarker]) -> int:
    hints = [marker.order_hint for marker in markers if marker.order_hint is not None]
    if hints:
        return min(hints)
    hinted = (element.details or {}).get("chronological_order")
    if isinstance(hinted, int) and not isinstance(hinted, bool):
        return hinted
    return 0


class ChronologyService:
    """时间线排序"""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.element_repo = NarrativeElementRepository(session)
        self.edge_repo = DependencyEdgeRepository(session)

    async def _dependency_pairs(
        self,
        project_id: str,
        elements: Sequence[NarrativeElement],
    ) -> Set[Tuple[str, str]]:
        """收集 (source_id, dependent_id)：依赖边 + dependency_elements 中按名称引用的元素"""
        ids = {element.id for element in elements}
        pairs: Set[Tuple[str, str]] = set()
        for edge in await self.edge_repo.list_by_project(project_id):
            if edge.source_id in ids and edge.dependent_id in ids and edge.source_id != edge.dependent_id:
                pairs.add((edge.source_id, edge.dependent_id))

        by_name: Dict[str, str] = {}
        for element in elements:
            by_name.setdefault(element.name.strip().lower(), element.id)
        for element in elements:
            for name in element.dependency_elements or []:
                source_id = by_name.get(str(name).strip().lower())
                if source_id and source_id != element.id:
                    pairs.add((source_id, element.id))
        return pairs

    async def assign_order(self, project_id: str) -> List[OrderedElement]:
        """
        为项目内参与时间线的元素分配稠密顺序并写回

        Returns:
            按最终顺序排列的元素
        """
        elements = await self.element_repo.list_by_categories(
            project_id, [category.value for category in CHRONOLOGY_CATEGORIES]
        )
        if not elements:
            return []

        by_id = {element.id: element for element in elements}
        order: Dict[str, int] = {}
        confidence: Dict[str, float] = {}
        for element in elements:
            markers = parse_temporal_markers(element.temporal_markers or [])
            base = element.chronological_confidence or 0.5
            if markers:
                average = sum(marker.confidence for marker in markers) / len(markers)
                base = max(base, average)
            order[element.id] = _initial_order(element, markers)
            confidence[element.id] = base

        pairs = await self._dependency_pairs(project_id, elements)
        dependents: Dict[str, List[str]] = {element_id: [] for element_id in by_id}
        incoming: Dict[str, Set[str]] = {element_id: set() for element_id in by_id}
        for source_id, dependent_id in pairs:
            dependents[source_id].append(dependent_id)
            incoming[dependent_id].add(source_id)

        def sort_key(element_id: str):
            element = by_id[element_id]
            return (order[element_id], _type_priority(element.category), -confidence[element_id], element.name, element_id)

        # 拓扑顺序传播；成环时取排序键最小的剩余元素，断开其未满足的入边
        pending = {element_id: set(sources) for element_id, sources in incoming.items()}
        ready = [sort_key(element_id) for element_id, sources in pending.items() if not sources]
        heapq.heapify(ready)
        done: Set[str] = set()
        while len(done) < len(by_id):
            if not ready:
                remaining = sorted((element_id for element_id in by_id if element_id not in done), key=sort_key)
                broken = remaining[0]
                logger.warning(
                    "时间线依赖成环，断开: project_id=%s element=%s sources=%s",
                    project_id, by_id[broken].name, sorted(pending[broken]),
                )
                pending[broken] = set()
                heapq.heappush(ready, sort_key(broken))
                continue

            current = heapq.heappop(ready)[-1]
            if current in done:
                continue
            done.add(current)

            resolved_sources = [source for source in incoming[current] if source in done]
            if resolved_sources:
                floor = max(order[source] for source in resolved_sources)
                if order[current] <= floor:
                    order[current] = floor + 1
                    confidence[current] = max(DEPENDENCY_CONFIDENCE_FLOOR, confidence[current])

            for dependent in dependents[current]:
                if dependent in done:
                    continue
                pending[dependent].discard(current)
                if not pending[dependent]:
                    heapq.heappush(ready, sort_key(dependent))

        ranked = sorted(by_id, key=sort_key)
        results: List[OrderedElement] = []
        for position, element_id in enumerate(ranked, start=1):
            element = by_id[element_id]
            element.chronological_order = position
            element.chronological_confidence = round(min(confidence[element_id], 1.0), 4)
            results.append(OrderedElement(
                id=element.id,
                name=element.name,
                category=element.category,
                order=position,
                confidence=element.chronological_confidence,
            ))

        await self.session.flush()
        logger.info(
            "时间线排序完成: project_id=%s elements=%d dependencies=%d",
            project_id, len(results), len(pairs),
        )
        return results


__all__ = [
    "TemporalMarker",
    "OrderedElement",
    "ChronologyService",
    "parse_temporal_marker",
    "parse_temporal_markers",
]
