"""
元素依赖管理

DependencyEdge 表示 source → dependent：dependent 在时间上晚于 source，
source 变化时 dependent 的来源章节需要重新处理。
"""

import logging
from collections import deque
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import InvalidParameterError, ResourceNotFoundError
from ..models import DependencyEdge
from ..repositories import (
    ContentHashRepository,
    DependencyEdgeRepository,
    NarrativeElementRepository,
)

logger = logging.getLogger(__name__)

MUST_OCCUR_AFTER = "must_occur_after"


class DependencyManager:
    """依赖边的增删查与下游失效"""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.edge_repo = DependencyEdgeRepository(session)
        self.element_repo = NarrativeElementRepository(session)
        self.hash_repo = ContentHashRepository(session)

    async def create(
        self,
        project_id: str,
        source_id: str,
        dependent_id: str,
        *,
        dependency_type: str = MUST_OCCUR_AFTER,
        strength: float = 0.5,
        note: Optional[str] = None,
    ) -> DependencyEdge:
        """
        创建依赖边，已存在时返回原边

        Raises:
            InvalidParameterError: 自依赖或强度越界
            ResourceNotFoundError: 任一端元素不存在
        """
        if source_id == dependent_id:
            raise InvalidParameterError("元素不能依赖自身", parameter="dependent_id")
        if not 0 <= strength <= 1:
            raise InvalidParameterError("依赖强度必须在 0 到 1 之间", parameter="strength")

        source = await self.element_repo.get_by_id(source_id)
        if source is None or source.project_id != project_id:
            raise ResourceNotFoundError("叙事元素", source_id)
        dependent = await self.element_repo.get_by_id(dependent_id)
        if dependent is None or dependent.project_id != project_id:
            raise ResourceNotFoundError("叙事元素", dependent_id)

        existing = await self.edge_repo.find_edge(source_id, dependent_id, dependency_type)
        if existing is not None:
            return existing

        edge = DependencyEdge(
            project_id=project_id,
            source_id=source_id,
            source_type=source.category,
            dependent_id=dependent_id,
            dependent_type=dependent.category,
            dependency_type=dependency_type,
            strength=strength,
            note=note,
        )
        await self.edge_repo.add(edge)
        logger.info(
            "创建依赖: project_id=%s %s(%s) -> %s(%s)",
            project_id, source.name, source_id, dependent.name, dependent_id,
        )
        return edge

    async def get_dependents(self, element_id: str) -> List[DependencyEdge]:
        return await self.edge_repo.list_dependents(element_id)

    async def get_dependencies(self, element_id: str) -> List[DependencyEdge]:
        return await self.edge_repo.list_dependencies(element_id)

    async def required_reprocessing(self, element_ids: Iterable[str]) -> Set[str]:
        """沿依赖边广度优先收集所有下游元素（不含起点）"""
        start = set(element_ids)
        visited: Set[str] = set()
        queue = deque(start)
        while queue:
            current = queue.popleft()
            for edge in await self.edge_repo.list_dependents(current):
                if edge.dependent_id not in visited and edge.dependent_id not in start:
                    visited.add(edge.dependent_id)
                    queue.append(edge.dependent_id)
        return visited

    async def invalidate_downstream(self, project_id: str, element_ids: Iterable[str]) -> List[str]:
        """
        把下游元素的来源章节标记为需要重新处理

        Returns:
            被标记的章节ID
        """
        downstream = await self.required_reprocessing(element_ids)
        if not downstream:
            return []

        chapter_ids: Set[str] = set()
        for element_id in downstream:
            element = await self.element_repo.get_by_id(element_id)
            if element is not None and element.project_id == project_id:
                chapter_ids.update(element.source_chapter_ids or [])

        marked = sorted(chapter_ids)
        if marked:
            await self.hash_repo.mark_needs_reprocessing(marked)
        logger.info(
            "下游失效: project_id=%s elements=%d chapters=%s",
            project_id, len(downstream), marked,
        )
        return marked

    async def remove(self, element_id: str) -> int:
        """删除与元素相关的全部依赖边"""
        return await self.edge_repo.delete_for_nodes([element_id])

    async def project_graph(self, project_id: str) -> Dict[str, List[str]]:
        """项目依赖图：source_id -> [dependent_id, ...]"""
        graph: Dict[str, List[str]] = {}
        for edge in await self.edge_repo.list_by_project(project_id):
            graph.setdefault(edge.source_id, []).append(edge.dependent_id)
        return graph


__all__ = [
    "DependencyManager",
    "MUST_OCCUR_AFTER",
]
