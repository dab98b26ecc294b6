import hashlib
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from fastapi import HTTPException
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fileflow.core.config import Settings, settings
from fileflow.core.exceptions import (AuthorizationException, BadRequestException,
                                      FileTooLargeException,
                                      IncompleteUploadException,
                                      InvalidFileTypeException, NotFoundException,
                                      QuotaExceededException, StorageIOException)
from fileflow.core.security import DECRYPTED_DOWNLOAD_SCOPE, create_signed_token
from fileflow.db.models.file import File
from fileflow.db.models.file_chunk import FileChunk
from fileflow.db.models.storage_quota import StorageQuota
from fileflow.db.repositories.file_chunk_repository import FileChunkRepository
from fileflow.db.repositories.file_repository import FileRepository
from fileflow.db.repositories.storage_quota_repository import StorageQuotaRepository
from fileflow.monitoring.metrics import UPLOAD_BYTES, UPLOAD_COUNT
from fileflow.plugins.storage.base import StorageOptions, StorageProvider
from fileflow.schemas.file import (VISIBLE_STATUSES, ChunkedUploadInit,
                                   ChunkUploadResult, DownloadUrlResponse,
                                   FileCategory, FileStatus, SingleUploadRequest,
                                   StorageQuotaResponse, UploadMetadata)
from fileflow.services.content import read_file_content
from fileflow.services.encryption_service import EncryptionService
from fileflow.services.order_access import OrderAccessResolver
from fileflow.services.processing_dispatcher import ProcessingDispatcher
from fileflow.utils.datetime import add_hours, add_minutes, now_iso, now_utc
from fileflow.utils.string import safe_filename


def _error_message(error: Exception) -> str:
    return getattr(error, "detail", None) or str(error)


class UploadService:
    """
    文件上传服务

    负责单次上传、分片上传、配额、下载链接和删除。配额采用乐观的
    先检查后记账方式：准入时只检查，写入成功后才原子地增加已用空间，
    同一用户的并发上传可能共同越过限额一次。
    """

    def __init__(
        self,
        db_session: AsyncSession,
        storage: StorageProvider,
        encryption: EncryptionService,
        dispatcher: ProcessingDispatcher,
        order_access: OrderAccessResolver,
        config: Settings = settings,
    ):
        self.db = db_session
        self.storage = storage
        self.encryption = encryption
        self.dispatcher = dispatcher
        self.order_access = order_access
        self.config = config
        self.file_repo = FileRepository(db_session)
        self.chunk_repo = FileChunkRepository(db_session)
        self.quota_repo = StorageQuotaRepository(db_session)

    def _validate(self, mime_type: str, size: int) -> None:
        if size <= 0:
            raise BadRequestException(detail="文件内容为空")
        if size > self.config.MAX_UPLOAD_SIZE:
            raise FileTooLargeException(
                detail=f"文件过大，最大允许{self.config.MAX_UPLOAD_SIZE / (1024 * 1024)}MB"
            )
        allowed = self.config.ALLOWED_MIME_TYPES
        if allowed and mime_type not in allowed:
            raise InvalidFileTypeException(detail=f"不支持的文件类型: {mime_type}")

    async def _get_quota(self, owner_id: UUID) -> StorageQuota:
        return await self.quota_repo.get_or_create(
            owner_id, self.config.DEFAULT_STORAGE_QUOTA
        )

    async def _check_quota(self, owner_id: UUID, size: int) -> None:
        quota = await self._get_quota(owner_id)
        if quota.used_space + size > quota.total_space:
            UPLOAD_COUNT.labels(outcome="rejected").inc()
            logger.info(
                f"用户 {owner_id} 配额不足: 已用 {quota.used_space}/{quota.total_space}, "
                f"本次 {size} bytes"
            )
            raise QuotaExceededException(
                detail=(
                    f"存储配额不足: 已用 {quota.used_space} / {quota.total_space} 字节，"
                    f"本次需要 {size} 字节"
                )
            )

    async def _create_pending(
        self,
        owner_id: UUID,
        meta: UploadMetadata,
        original_name: str,
        mime_type: str,
        size: int,
        extra_metadata: Optional[Dict[str, Any]] = None,
    ) -> File:
        """
        在任何存储写入之前创建 PENDING 记录，之后的失败都能对应到文件ID
        """
        metadata = {"tags": meta.tags}
        if meta.description:
            metadata["description"] = meta.description
        metadata.update(extra_metadata or {})

        return await self.file_repo.create(
            obj_in={
                "original_name": original_name,
                "mime_type": mime_type,
                "size": size,
                "category": meta.category,
                "status": FileStatus.PENDING,
                "owner_id": owner_id,
                "order_id": meta.order_id,
                "file_metadata": metadata,
                "processing_history": [
                    {
                        "timestamp": now_iso(),
                        "action": "create",
                        "status": FileStatus.PENDING.value,
                    }
                ],
            }
        )

    def _storage_path(self, file: File) -> str:
        return f"{file.storage_prefix}/{safe_filename(file.original_name)}"

    async def _finalize(self, file: File, content: bytes, encrypt: bool) -> File:
        """
        加密（可选）并写入存储，成功后记账，失败时标记 FAILED 且不动配额
        """
        path = self._storage_path(file)
        content_hash = hashlib.sha256(content).hexdigest()
        key_id = None
        try:
            data = content
            if encrypt:
                data, key_id = self.encryption.encrypt_file(content)
            await self.storage.upload_file(
                data,
                path,
                StorageOptions(
                    content_type=file.mime_type,
                    metadata={"file-id": str(file.id), "owner-id": str(file.owner_id)},
                ),
            )
        except Exception as e:
            message = _error_message(e)
            logger.error(f"文件 {file.id} 写入存储失败: {message}")
            UPLOAD_COUNT.labels(outcome="failed").inc()
            await self.file_repo.mark_failed(file, action="upload", error=message)
            if isinstance(e, HTTPException):
                raise
            raise StorageIOException(detail=f"文件存储失败: {message}") from e

        # 写入已确认，配额增量与状态变更在同一事务中提交
        await self.quota_repo.increment_used_space(
            file.owner_id, len(content), commit=False
        )
        file = await self.file_repo.mark_uploaded(
            file,
            path=path,
            size=len(content),
            content_hash=content_hash,
            encryption_key_id=key_id,
        )
        UPLOAD_COUNT.labels(outcome="uploaded").inc()
        UPLOAD_BYTES.inc(len(content))
        logger.info(f"文件 {file.id} 上传成功: {path} ({len(content)} bytes)")
        return file

    async def upload_file(
        self, content: bytes, request: SingleUploadRequest, owner_id: UUID
    ) -> File:
        """
        单次上传

        参数:
            content: 文件内容
            request: 文件名、类型、分类等信息
            owner_id: 上传者ID

        返回:
            File 记录（已投递处理任务）
        """
        self._validate(request.mime_type, len(content))
        await self._check_quota(owner_id, len(content))

        file = await self._create_pending(
            owner_id, request, request.original_name, request.mime_type, len(content)
        )
        file = await self._finalize(file, content, request.encrypt)
        return await self.dispatcher.dispatch(self.file_repo, file)

    async def initiate_chunked_upload(
        self, request: ChunkedUploadInit, owner_id: UUID
    ) -> File:
        """
        初始化分片上传，按声明的总大小做一次配额预检
        """
        self._validate(request.mime_type, request.total_size)
        await self._check_quota(owner_id, request.total_size)

        file = await self._create_pending(
            owner_id,
            request,
            request.original_name,
            request.mime_type,
            request.total_size,
            extra_metadata={
                "totalChunks": request.total_chunks,
                "declaredSize": request.total_size,
                "encrypt": request.encrypt,
                "chunksReceived": 0,
            },
        )
        logger.info(
            f"分片上传已初始化: {file.id}, 共 {request.total_chunks} 片, "
            f"{request.total_size} bytes"
        )
        return file

    async def _get_owned_file(self, file_id: UUID, owner_id: UUID) -> File:
        file = await self.file_repo.get_existing(file_id)
        if file is None:
            raise NotFoundException(detail="文件不存在")
        if file.owner_id != owner_id:
            raise AuthorizationException(detail="只有上传者可以操作该文件")
        return file

    async def accept_chunk(
        self,
        file_id: UUID,
        chunk_number: int,
        total_chunks: int,
        data: bytes,
        owner_id: UUID,
    ) -> ChunkUploadResult:
        """
        接收一个分片，同一序号重复上传会覆盖之前的内容
        """
        file = await self._get_owned_file(file_id, owner_id)
        if file.status != FileStatus.PENDING or file.completing_at is not None:
            raise BadRequestException(detail="文件正在合并、已完成上传或已失败，不能继续上传分片")

        expected = file.file_metadata.get("totalChunks")
        if expected is not None and expected != total_chunks:
            raise BadRequestException(
                detail=f"分片总数不一致: 初始化时为 {expected}, 本次为 {total_chunks}"
            )
        if total_chunks < 1 or not 0 <= chunk_number < total_chunks:
            raise BadRequestException(detail=f"分片序号超出范围: {chunk_number}")
        if not data:
            raise BadRequestException(detail="分片内容为空")
        if len(data) > self.config.MAX_CHUNK_SIZE:
            raise FileTooLargeException(
                detail=f"分片过大，最大允许{self.config.MAX_CHUNK_SIZE / (1024 * 1024)}MB"
            )

        path = f"temp/{file.id}/chunks/{chunk_number}"
        await self.storage.upload_file(data, path)
        await self.chunk_repo.upsert(
            file_id=file.id,
            chunk_number=chunk_number,
            size=len(data),
            path=path,
            expires_at=add_hours(now_utc(), self.config.CHUNK_UPLOAD_TTL_HOURS),
        )

        received = await self.chunk_repo.count_by_file(file.id)
        await self.file_repo.merge_metadata(
            file.id,
            {
                "chunksReceived": received,
                "totalChunks": total_chunks,
                "lastChunkReceived": now_iso(),
            },
        )
        logger.debug(f"文件 {file_id} 收到分片 {chunk_number}, 进度 {received}/{total_chunks}")
        return ChunkUploadResult(
            complete=received == total_chunks,
            chunks_received=received,
            total_chunks=total_chunks,
        )

    async def complete_chunked_upload(self, file_id: UUID, owner_id: UUID) -> File:
        """
        合并分片

        先以条件更新占用文件，并发的完成请求只有一个会合并和记账，其余
        直接返回文件当前状态。分片按序号排序后拼接，与到达顺序无关。
        合并后的文件写入成功后才删除临时分片，合并失败时交给清理任务。
        """
        file = await self._get_owned_file(file_id, owner_id)
        if file.status == FileStatus.FAILED:
            raise BadRequestException(detail="上传已失败，请重新上传")
        if file.status != FileStatus.PENDING:
            # 重复提交完成请求
            return file

        if not await self.file_repo.claim_for_completion(file.id):
            logger.info(f"文件 {file.id} 已由其他请求合并，跳过")
            await self.db.refresh(file)
            return file

        try:
            total_chunks = int(file.file_metadata.get("totalChunks") or 0)
            chunks = await self.chunk_repo.get_by_file(file.id)
            chunks = sorted(
                (c for c in chunks if c.chunk_number < total_chunks),
                key=lambda c: c.chunk_number,
            )
            present = {chunk.chunk_number for chunk in chunks}
            missing = [n for n in range(total_chunks) if n not in present]
            if total_chunks < 1 or missing:
                raise IncompleteUploadException(
                    detail=f"分片上传尚未完成，缺少分片: {missing}"
                )

            size = sum(chunk.size for chunk in chunks)
            self._validate(file.mime_type, size)
            await self._check_quota(file.owner_id, size)
        except HTTPException:
            # 还没有读取分片，释放占用以便补齐分片或腾出配额后重试
            await self.file_repo.release_completion_claim(file.id)
            raise

        try:
            parts = []
            for chunk in chunks:
                parts.append(await self.storage.download_file(chunk.path))
        except StorageIOException as e:
            logger.error(f"文件 {file.id} 读取分片失败: {e.detail}")
            UPLOAD_COUNT.labels(outcome="failed").inc()
            await self.file_repo.mark_failed(file, action="combine-chunks", error=e.detail)
            self.dispatcher.schedule_cleanup([file.id])
            raise

        content = b"".join(parts)
        declared = file.file_metadata.get("declaredSize")
        if declared is not None and declared != len(content):
            logger.warning(
                f"文件 {file.id} 实际大小与声明不一致: {len(content)} != {declared}"
            )
        file.update_metadata(combinedAt=now_iso(), originalChunks=total_chunks)

        try:
            file = await self._finalize(
                file, content, bool(file.file_metadata.get("encrypt"))
            )
        except HTTPException:
            self.dispatcher.schedule_cleanup([file.id])
            raise
        await self._cleanup_chunks(file, chunks)
        return await self.dispatcher.dispatch(self.file_repo, file)

    async def _cleanup_chunks(self, file: File, chunks: List[FileChunk]) -> None:
        """
        删除临时分片，失败时交给后台清理任务
        """
        try:
            for chunk in chunks:
                await self.storage.delete_file(chunk.path)
            await self.chunk_repo.delete_by_file(file.id)
        except StorageIOException as e:
            logger.warning(f"文件 {file.id} 分片清理失败，转为后台清理: {e.detail}")
            self.dispatcher.schedule_cleanup([file.id])
        except SQLAlchemyError as e:
            logger.warning(f"文件 {file.id} 分片记录删除失败，转为后台清理: {str(e)}")
            await self.db.rollback()
            await self.db.refresh(file)
            self.dispatcher.schedule_cleanup([file.id])

    async def _can_access(self, file: File, requester_id: UUID) -> bool:
        if file.owner_id == requester_id:
            return True
        if file.order_id is None:
            return False
        participants = await self.order_access.get_participants(file.order_id)
        return requester_id in participants

    async def get_file(self, file_id: UUID, requester_id: UUID) -> File:
        """
        获取文件（上传者或订单参与方）
        """
        file = await self.file_repo.get_existing(file_id)
        if file is None:
            raise NotFoundException(detail="文件不存在")
        if not await self._can_access(file, requester_id):
            raise AuthorizationException(detail="无权访问该文件")
        return file

    async def get_download_url(
        self, file_id: UUID, requester_id: UUID
    ) -> DownloadUrlResponse:
        """
        生成限时下载链接

        加密文件的链接指向服务自身的解密下载路由，其他文件直接使用存储的签名链接。
        """
        file = await self.get_file(file_id, requester_id)
        if file.status not in VISIBLE_STATUSES or not file.path:
            raise BadRequestException(detail="文件尚未上传完成，无法下载")

        expires_in = self.config.SIGNED_URL_EXPIRATION_MINUTES * 60
        if file.is_encrypted:
            token = create_signed_token(
                DECRYPTED_DOWNLOAD_SCOPE, {"file_id": str(file.id)}, expires_in
            )
            base_url = self.config.STORAGE_PUBLIC_BASE_URL.rstrip("/")
            url = f"{base_url}{self.config.API_V1_STR}/files/decrypted/{token}"
        else:
            url = await self.storage.get_signed_url(file.path, expires_in)

        return DownloadUrlResponse(
            url=url,
            expires_at=add_minutes(now_utc(), self.config.SIGNED_URL_EXPIRATION_MINUTES),
        )

    async def open_decrypted(self, file_id: UUID) -> Tuple[File, bytes]:
        """
        读取并解密文件内容（签名令牌已在路由中校验）
        """
        file = await self.file_repo.get_existing(file_id)
        if file is None or file.status not in VISIBLE_STATUSES:
            raise NotFoundException(detail="文件不存在")
        content = await read_file_content(self.storage, self.encryption, file)
        return file, content

    async def list_files(
        self,
        owner_id: UUID,
        category: Optional[FileCategory] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[File], int]:
        """
        分页获取用户文件
        """
        page = max(page, 1)
        return await self.file_repo.list_by_owner(
            owner_id, category=category, skip=(page - 1) * limit, limit=limit
        )

    async def delete_file(self, file_id: UUID, owner_id: UUID) -> None:
        """
        删除文件

        删除原文件、缩略图和所有版本，软删除记录，并按记录的大小释放配额。
        """
        file = await self._get_owned_file(file_id, owner_id)

        paths = []
        for path in [file.path, file.thumbnail_path, *(v.get("path") for v in file.versions or [])]:
            if path and path not in paths:
                paths.append(path)

        for path in paths:
            await self.storage.delete_file(path)

        # 未完成或合并失败的上传可能还留有临时分片
        chunks = await self.chunk_repo.get_by_file(file.id)
        for chunk in chunks:
            await self.storage.delete_file(chunk.path)
        if chunks:
            await self.chunk_repo.delete_by_file(file.id)

        if file.quota_charged:
            await self.quota_repo.increment_used_space(
                file.owner_id, -file.size, commit=False
            )
            file.quota_charged = False
        await self.file_repo.soft_delete(file)
        logger.info(f"文件已删除: {file_id}, 释放 {file.size} bytes")

    async def get_quota(self, owner_id: UUID) -> StorageQuotaResponse:
        quota = await self._get_quota(owner_id)
        return StorageQuotaResponse(
            used=quota.used_space, total=quota.total_space, percentage=quota.percentage
        )
