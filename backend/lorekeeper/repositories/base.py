from typing import Any, Generic, List, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

ModelType = TypeVar("ModelType")


class BaseRepository(Generic[ModelType]):
    """通用仓储基类，封装各表共用的读写操作。"""

    model: type[ModelType]

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, **filters: Any) -> Optional[ModelType]:
        stmt = select(self.model).filter_by(**filters)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_by_id(self, record_id: Any) -> Optional[ModelType]:
        return await self.session.get(self.model, record_id)

    async def list_by_project(self, project_id: str) -> List[ModelType]:
        """
        按项目ID查询，结果按创建时间排序

        Raises:
            ValueError: 如果模型没有project_id字段
        """
        project_field = getattr(self.model, "project_id", None)
        if project_field is None:
            raise ValueError(f"模型 {self.model.__name__} 没有 project_id 字段")
        stmt = select(self.model).where(project_field == project_id)
        created_at = getattr(self.model, "created_at", None)
        if created_at is not None:
            stmt = stmt.order_by(created_at)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def add(self, instance: ModelType) -> ModelType:
        self.session.add(instance)
        await self.session.flush()
        return instance

    async def bulk_add(self, instances: List[ModelType]) -> List[ModelType]:
        """批量添加实例并刷新，空列表直接返回"""
        if not instances:
            return []

        self.session.add_all(instances)
        await self.session.flush()
        return instances
