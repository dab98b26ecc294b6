from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fileflow.db.models.storage_quota import StorageQuota
from fileflow.db.repositories.base_repository import BaseRepository


class StorageQuotaRepository(BaseRepository[StorageQuota]):
    """
    存储配额仓库类
    """

    def __init__(self, db_session: AsyncSession):
        super().__init__(db_session, StorageQuota)

    async def get_by_owner(self, owner_id: UUID):
        query = (
            select(StorageQuota)
            .where(StorageQuota.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return result.scalars().first()

    async def get_or_create(self, owner_id: UUID, default_total: int) -> StorageQuota:
        """
        获取用户配额，首次使用时按默认额度创建
        """
        quota = await self.get_by_owner(owner_id)
        if quota is not None:
            return quota

        try:
            return await self.create(
                obj_in={
                    "owner_id": owner_id,
                    "total_space": default_total,
                    "used_space": 0,
                }
            )
        except IntegrityError:
            # 并发请求已经创建了这一行
            await self.db.rollback()
            return await self.get_by_owner(owner_id)

    async def increment_used_space(
        self, owner_id: UUID, delta: int, *, commit: bool = True
    ) -> None:
        """
        原子地增减已用空间（单条 UPDATE，不做读-改-写）

        delta 为负数时表示释放空间。
        """
        await self.db.execute(
            update(StorageQuota)
            .where(StorageQuota.owner_id == owner_id)
            .values(used_space=StorageQuota.used_space + delta)
            .execution_options(synchronize_session=False)
        )
        if commit:
            await self.db.commit()
