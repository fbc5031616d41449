"""
知识缺口检测

某类别在项目中没有任何记录时视为缺口。缺口无法通过内容比对发现，
因此该类别必须完整抽取一次，不受章节变更检测的跳过逻辑影响。
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.constants import (
    CONTEXT_DEPENDENT_GAPS,
    GAP_CATEGORY_MAP,
    GAP_EXTRACTION_CATEGORIES,
    STANDALONE_GAPS,
    GapCategory,
    KnowledgeCategory,
)
from ..repositories import NarrativeElementRepository

logger = logging.getLogger(__name__)


@dataclass
class GapFillPlan:
    """缺口补全计划"""

    context_dependent: List[GapCategory] = field(default_factory=list)
    standalone: List[GapCategory] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.context_dependent and not self.standalone

    @property
    def categories(self) -> List[GapCategory]:
        return self.context_dependent + self.standalone

    @staticmethod
    def knowledge_categories(gaps: Iterable[GapCategory]) -> List[KnowledgeCategory]:
        """补全这些缺口需要抽取的类别（去重、保序）"""
        result: List[KnowledgeCategory] = []
        for gap in gaps:
            for category in GAP_EXTRACTION_CATEGORIES[gap]:
                if category not in result:
                    result.append(category)
        return result


class GapDetector:
    """按类别行数检测缺口"""

    def __init__(self, session: AsyncSession):
        self.repo = NarrativeElementRepository(session)

    async def detect_gaps(self, project_id: str) -> Dict[GapCategory, bool]:
        """返回 {类别: 是否为空}"""
        counts = await self.repo.count_by_category(project_id)
        gaps = {gap: counts.get(category.value, 0) == 0 for gap, category in GAP_CATEGORY_MAP.items()}
        logger.info(
            "缺口检测: project_id=%s gaps=%s",
            project_id, [gap.value for gap, empty in gaps.items() if empty],
        )
        return gaps

    @staticmethod
    def plan_gap_fill(
        gaps: Dict[GapCategory, bool],
        selected: Optional[Iterable[GapCategory]] = None,
    ) -> GapFillPlan:
        """
        生成补全计划

        Args:
            gaps: detect_gaps 的结果
            selected: 只补全这些类别（为空时补全全部缺口）
        """
        wanted = set(GapCategory(gap) for gap in selected) if selected else set(GAP_CATEGORY_MAP)
        missing = {gap for gap, empty in gaps.items() if empty and gap in wanted}
        return GapFillPlan(
            context_dependent=[gap for gap in CONTEXT_DEPENDENT_GAPS if gap in missing],
            standalone=[gap for gap in STANDALONE_GAPS if gap in missing],
        )


__all__ = [
    "GapDetector",
    "GapFillPlan",
]
