from typing import Iterable, List

from sqlalchemy import delete, or_, select

from .base import BaseRepository
from ..models import DependencyEdge


class DependencyEdgeRepository(BaseRepository[DependencyEdge]):
    """依赖边Repository"""

    model = DependencyEdge

    async def list_dependents(self, source_id: str) -> List[DependencyEdge]:
        stmt = select(DependencyEdge).where(DependencyEdge.source_id == source_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_dependencies(self, dependent_id: str) -> List[DependencyEdge]:
        stmt = select(DependencyEdge).where(DependencyEdge.dependent_id == dependent_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_edge(self, source_id: str, dependent_id: str, dependency_type: str):
        return await self.get(
            source_id=source_id,
            dependent_id=dependent_id,
            dependency_type=dependency_type,
        )

    async def delete_for_nodes(self, node_ids: Iterable[str]) -> int:
        """删除与指定节点相关的所有边（作为起点或终点）"""
        ids = list(node_ids)
        if not ids:
            return 0
        stmt = delete(DependencyEdge).where(
            or_(DependencyEdge.source_id.in_(ids), DependencyEdge.dependent_id.in_(ids))
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount
