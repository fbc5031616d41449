from typing import Any, Dict, List, Optional

from sqlalchemy import select

from .base import BaseRepository
from ..models import KnowledgeChangeLog


class KnowledgeChangeLogRepository(BaseRepository[KnowledgeChangeLog]):
    """知识变更审计Repository（只追加）"""

    model = KnowledgeChangeLog

    async def record(
        self,
        *,
        project_id: str,
        category: str,
        change_type: str,
        element_id: Optional[str] = None,
        reason: Optional[str] = None,
        confidence: Optional[float] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> KnowledgeChangeLog:
        entry = KnowledgeChangeLog(
            project_id=project_id,
            element_id=element_id,
            category=str(category),
            change_type=change_type,
            reason=reason,
            confidence=confidence,
            payload=dict(payload or {}),
        )
        return await self.add(entry)

    async def list_for_project(
        self,
        project_id: str,
        change_type: Optional[str] = None,
    ) -> List[KnowledgeChangeLog]:
        stmt = select(KnowledgeChangeLog).where(KnowledgeChangeLog.project_id == project_id)
        if change_type:
            stmt = stmt.where(KnowledgeChangeLog.change_type == change_type)
        stmt = stmt.order_by(KnowledgeChangeLog.id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
