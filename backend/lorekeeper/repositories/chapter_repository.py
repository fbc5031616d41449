from typing import List

from sqlalchemy import select

from .base import BaseRepository
from ..models import Chapter


class ChapterRepository(BaseRepository[Chapter]):
    """章节Repository（只读访问外部维护的章节正文）"""

    model = Chapter

    async def list_for_project(self, project_id: str) -> List[Chapter]:
        """按章节号顺序获取项目的全部章节"""
        stmt = (
            select(Chapter)
            .where(Chapter.project_id == project_id)
            .order_by(Chapter.chapter_number, Chapter.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
