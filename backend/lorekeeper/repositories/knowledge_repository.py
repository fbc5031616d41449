from typing import Dict, Iterable, List

from sqlalchemy import func, select

from .base import BaseRepository
from ..models import NarrativeElement


class NarrativeElementRepository(BaseRepository[NarrativeElement]):
    """叙事元素Repository"""

    model = NarrativeElement

    async def list_by_category(self, project_id: str, category: str) -> List[NarrativeElement]:
        stmt = (
            select(NarrativeElement)
            .where(
                NarrativeElement.project_id == project_id,
                NarrativeElement.category == category,
            )
            .order_by(NarrativeElement.created_at, NarrativeElement.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_categories(
        self,
        project_id: str,
        categories: Iterable[str],
    ) -> List[NarrativeElement]:
        stmt = (
            select(NarrativeElement)
            .where(
                NarrativeElement.project_id == project_id,
                NarrativeElement.category.in_([str(c) for c in categories]),
            )
            .order_by(NarrativeElement.created_at, NarrativeElement.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_by_name(
        self,
        project_id: str,
        category: str,
        name: str,
    ) -> List[NarrativeElement]:
        """按名称查询同类别记录（同名实体可能有多条粒度记录）"""
        stmt = (
            select(NarrativeElement)
            .where(
                NarrativeElement.project_id == project_id,
                NarrativeElement.category == category,
                NarrativeElement.name == name,
            )
            .order_by(NarrativeElement.created_at, NarrativeElement.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_category(self, project_id: str) -> Dict[str, int]:
        """统计项目内每个类别的记录数"""
        stmt = (
            select(NarrativeElement.category, func.count())
            .where(NarrativeElement.project_id == project_id)
            .group_by(NarrativeElement.category)
        )
        result = await self.session.execute(stmt)
        return {category: count for category, count in result.all()}

    async def count_low_confidence(self, project_id: str, threshold: float) -> int:
        stmt = (
            select(func.count())
            .select_from(NarrativeElement)
            .where(
                NarrativeElement.project_id == project_id,
                NarrativeElement.confidence_score < threshold,
            )
        )
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def list_with_chapter(
        self,
        project_id: str,
        chapter_ids: Iterable[str],
    ) -> List[NarrativeElement]:
        """
        获取来源章节包含任一指定章节的记录

        source_chapter_ids 为 JSON 列，跨数据库的包含查询不可移植，这里在内存中过滤。
        """
        wanted = set(chapter_ids)
        if not wanted:
            return []
        elements = await self.list_by_project(project_id)
        return [
            element for element in elements
            if wanted.intersection(element.source_chapter_ids or [])
        ]
