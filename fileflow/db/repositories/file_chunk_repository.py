from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fileflow.db.models.file import File
from fileflow.db.models.file_chunk import FileChunk
from fileflow.db.repositories.base_repository import BaseRepository
from fileflow.schemas.file import FileStatus


class FileChunkRepository(BaseRepository[FileChunk]):
    """
    文件分片仓库类
    """

    def __init__(self, db_session: AsyncSession):
        super().__init__(db_session, FileChunk)

    async def get_chunk(self, file_id: UUID, chunk_number: int) -> Optional[FileChunk]:
        query = select(FileChunk).where(
            FileChunk.file_id == file_id, FileChunk.chunk_number == chunk_number
        )
        result = await self.db.execute(query)
        return result.scalars().first()

    async def get_by_file(self, file_id: UUID) -> List[FileChunk]:
        """
        获取文件的全部分片，按分片序号排序
        """
        query = (
            select(FileChunk)
            .where(FileChunk.file_id == file_id)
            .order_by(FileChunk.chunk_number)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count_by_file(self, file_id: UUID) -> int:
        total = await self.db.scalar(
            select(func.count(FileChunk.id)).where(FileChunk.file_id == file_id)
        )
        return total or 0

    async def upsert(
        self,
        *,
        file_id: UUID,
        chunk_number: int,
        size: int,
        path: str,
        expires_at: Optional[datetime] = None,
    ) -> FileChunk:
        """
        保存分片记录，同一序号重复上传时覆盖而不是新增
        """
        values = {"size": size, "path": path, "expires_at": expires_at}
        existing = await self.get_chunk(file_id, chunk_number)
        if existing is not None:
            return await self.update(db_obj=existing, obj_in=values)

        try:
            return await self.create(
                obj_in={"file_id": file_id, "chunk_number": chunk_number, **values}
            )
        except IntegrityError:
            # 并发重试同一分片时唯一约束冲突，改为更新已存在的记录
            await self.db.rollback()
            existing = await self.get_chunk(file_id, chunk_number)
            return await self.update(db_obj=existing, obj_in=values)

    async def delete_by_file(self, file_id: UUID) -> int:
        result = await self.db.execute(
            delete(FileChunk).where(FileChunk.file_id == file_id)
        )
        await self.db.commit()
        return result.rowcount or 0

    async def get_expired_file_ids(self, now: datetime) -> List[UUID]:
        """
        查找分片已过期的未完成或失败上传

        已合并成功的文件不在其中，它们的分片由完成请求或清理任务删除。
        """
        query = (
            select(FileChunk.file_id)
            .join(File, File.id == FileChunk.file_id)
            .where(
                FileChunk.expires_at.is_not(None),
                FileChunk.expires_at < now,
                File.status.in_((FileStatus.PENDING, FileStatus.FAILED)),
            )
            .distinct()
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())
