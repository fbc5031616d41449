from typing import Iterable, List, Optional

from sqlalchemy import select, update

from .base import BaseRepository
from ..models import ContentHash


class ContentHashRepository(BaseRepository[ContentHash]):
    """章节内容哈希Repository"""

    model = ContentHash

    async def get_by_chapter(self, chapter_id: str) -> Optional[ContentHash]:
        stmt = select(ContentHash).where(ContentHash.chapter_id == chapter_id)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def list_by_chapters(self, chapter_ids: Iterable[str]) -> List[ContentHash]:
        ids = list(chapter_ids)
        if not ids:
            return []
        stmt = select(ContentHash).where(ContentHash.chapter_id.in_(ids))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def mark_needs_reprocessing(self, chapter_ids: Iterable[str]) -> int:
        ids = list(chapter_ids)
        if not ids:
            return 0
        stmt = (
            update(ContentHash)
            .where(ContentHash.chapter_id.in_(ids))
            .values(needs_reprocessing=True)
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount
