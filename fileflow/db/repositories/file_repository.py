from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fileflow.db.models.file import File
from fileflow.db.repositories.base_repository import BaseRepository
from fileflow.schemas.file import VISIBLE_STATUSES, FileCategory, FileStatus
from fileflow.utils.datetime import now_iso, now_utc


class FileRepository(BaseRepository[File]):
    """
    文件仓库类
    """

    def __init__(self, db_session: AsyncSession):
        super().__init__(db_session, File)

    async def get_existing(self, file_id: UUID) -> Optional[File]:
        """
        获取未被软删除的文件
        """
        query = select(File).where(File.id == file_id, File.deleted_at.is_(None))
        result = await self.db.execute(query)
        return result.scalars().first()

    async def get_for_update(self, file_id: UUID) -> Optional[File]:
        """
        加行锁重新读取文件，覆盖会话中可能过期的状态
        """
        query = (
            select(File)
            .where(File.id == file_id, File.deleted_at.is_(None))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return result.scalars().first()

    async def claim_for_completion(self, file_id: UUID) -> bool:
        """
        条件更新占用待合并的文件，同一文件的并发完成请求只有一个返回 True
        """
        result = await self.db.execute(
            update(File)
            .where(
                File.id == file_id,
                File.status == FileStatus.PENDING,
                File.completing_at.is_(None),
                File.deleted_at.is_(None),
            )
            .values(completing_at=now_utc())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def release_completion_claim(self, file_id: UUID) -> None:
        await self.db.execute(
            update(File)
            .where(File.id == file_id, File.status == FileStatus.PENDING)
            .values(completing_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def list_by_owner(
        self,
        owner_id: UUID,
        *,
        category: Optional[FileCategory] = None,
        skip: int = 0,
        limit: int = 10,
    ) -> Tuple[List[File], int]:
        """
        分页获取用户已上传成功的文件及总数
        """
        conditions = [
            File.owner_id == owner_id,
            File.deleted_at.is_(None),
            File.status.in_(VISIBLE_STATUSES),
        ]
        if category is not None:
            conditions.append(File.category == category)

        total = await self.db.scalar(select(func.count(File.id)).where(*conditions))
        query = (
            select(File)
            .where(*conditions)
            .order_by(File.created_at.desc(), File.id)
            .offset(skip)
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all()), total or 0

    async def transition(
        self,
        file_id: UUID,
        status: FileStatus,
        action: str,
        error: Optional[str] = None,
    ) -> Optional[File]:
        """
        推进文件状态

        只允许状态机定义的前进迁移，不合法的迁移（例如重复投递的任务
        试图把 ACTIVE 改回 PROCESSING）会被忽略。
        """
        file = await self.get_for_update(file_id)
        if file is None:
            return None
        if file.can_transition_to(status):
            file.status = status
            file.add_history_event(action, status.value, error)
            return await self.save(file)
        await self.db.commit()
        return file

    async def mark_uploaded(
        self,
        file: File,
        *,
        path: str,
        size: int,
        content_hash: str,
        encryption_key_id: Optional[str] = None,
    ) -> File:
        """
        记录存储写入成功，与同一事务中的配额增量一起提交
        """
        file.path = path
        file.size = size
        file.is_encrypted = encryption_key_id is not None
        file.encryption_key_id = encryption_key_id
        file.quota_charged = True
        file.status = FileStatus.UPLOADED
        file.update_metadata(hash=content_hash, uploadedAt=now_iso())
        file.add_history_event("upload", FileStatus.UPLOADED.value)
        return await self.save(file)

    async def mark_failed(self, file: File, *, action: str, error: str) -> File:
        """
        记录上传失败
        """
        if file.can_transition_to(FileStatus.FAILED):
            file.status = FileStatus.FAILED
        file.update_metadata(uploadError=error, uploadErrorTime=now_iso())
        file.add_history_event(action, FileStatus.FAILED.value, error)
        return await self.save(file)

    async def merge_metadata(
        self,
        file_id: UUID,
        patch: Dict[str, Any],
        *,
        remove_keys: Iterable[str] = (),
        versions: Optional[List[Dict[str, Any]]] = None,
        default_thumbnail: Optional[str] = None,
        history: Optional[Tuple[str, str, Optional[str]]] = None,
    ) -> Optional[File]:
        """
        合并元数据

        在行锁内重新读取后只覆盖 patch 中的键，不同任务写入互不相交的键时
        不会互相覆盖。versions 按 type 替换同类版本，重复执行结果不变。
        """
        file = await self.get_for_update(file_id)
        if file is None:
            await self.db.commit()
            return None

        metadata = dict(file.file_metadata or {})
        for key in remove_keys:
            metadata.pop(key, None)
        metadata.update(patch)
        file.file_metadata = metadata

        if versions:
            new_types = {version["type"] for version in versions}
            kept = [v for v in (file.versions or []) if v["type"] not in new_types]
            file.versions = kept + list(versions)

        if default_thumbnail and not file.thumbnail_path:
            file.thumbnail_path = default_thumbnail

        if history is not None:
            file.add_history_event(*history)

        return await self.save(file)

    async def soft_delete(self, file: File) -> File:
        """
        软删除文件记录
        """
        file.deleted_at = now_utc()
        file.add_history_event("delete", "deleted")
        return await self.save(file)
