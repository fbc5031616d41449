from typing import List, Optional

from sqlalchemy import select

from .base import BaseRepository
from ..models import SemanticChunk


class SemanticChunkRepository(BaseRepository[SemanticChunk]):
    """语义分块Repository"""

    model = SemanticChunk

    async def list_by_chapter(self, chapter_id: str) -> List[SemanticChunk]:
        stmt = (
            select(SemanticChunk)
            .where(SemanticChunk.chapter_id == chapter_id)
            .order_by(SemanticChunk.chunk_index)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_embedded(
        self,
        project_id: str,
        exclude_chapter_id: Optional[str] = None,
    ) -> List[SemanticChunk]:
        """获取项目内已有向量的分块，可排除当前章节"""
        stmt = select(SemanticChunk).where(
            SemanticChunk.project_id == project_id,
            SemanticChunk.embedding.is_not(None),
        )
        if exclude_chapter_id:
            stmt = stmt.where(SemanticChunk.chapter_id != exclude_chapter_id)
        stmt = stmt.order_by(SemanticChunk.chapter_id, SemanticChunk.chunk_index)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def replace_for_chapter(
        self,
        chapter_id: str,
        chunks: List[SemanticChunk],
    ) -> List[SemanticChunk]:
        """
        整体替换章节的分块

        逐条 ORM 删除，使旧对象移出 identity map，新行复用主键时不会冲突。
        """
        for existing in await self.list_by_chapter(chapter_id):
            await self.session.delete(existing)
        await self.session.flush()
        return await self.bulk_add(chunks)
