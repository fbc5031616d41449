from typing import List, Optional

from sqlalchemy import select

from .base import BaseRepository
from ..models import SynthesizedEntity


class SynthesizedEntityRepository(BaseRepository[SynthesizedEntity]):
    """合成实体Repository"""

    model = SynthesizedEntity

    async def get_by_name(
        self,
        project_id: str,
        category: str,
        name: str,
    ) -> Optional[SynthesizedEntity]:
        return await self.get(project_id=project_id, category=str(category), name=name)

    async def list_by_category(
        self,
        project_id: str,
        category: Optional[str] = None,
    ) -> List[SynthesizedEntity]:
        stmt = select(SynthesizedEntity).where(SynthesizedEntity.project_id == project_id)
        if category:
            stmt = stmt.where(SynthesizedEntity.category == str(category))
        stmt = stmt.order_by(SynthesizedEntity.category, SynthesizedEntity.name)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
