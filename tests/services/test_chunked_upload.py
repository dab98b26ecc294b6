"""
测试分片上传：乱序到达、重复分片、合并和临时分片清理
"""

import asyncio
import itertools
import uuid
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fileflow.core.exceptions import (AuthorizationException, BadRequestException,
                                      FileTooLargeException,
                                      IncompleteUploadException, NotFoundException,
                                      QuotaExceededException, StorageIOException)
from fileflow.db.models import Base
from fileflow.db.repositories.file_chunk_repository import FileChunkRepository
from fileflow.db.repositories.file_repository import FileRepository
from fileflow.db.repositories.storage_quota_repository import StorageQuotaRepository
from fileflow.schemas.file import ChunkedUploadInit, FileStatus
from fileflow.schemas.jobs import CleanupTempFilesJob, GenerateThumbnailsJob
from fileflow.services.processing_dispatcher import ProcessingDispatcher
from fileflow.services.upload_service import UploadService
from tests.utils.fakes import make_image

CHUNKS = [b"AAAA", b"BBBB", b"CC"]


def init_request(**overrides) -> ChunkedUploadInit:
    data = {
        "original_name": "pattern.txt",
        "mime_type": "text/plain",
        "total_size": sum(len(chunk) for chunk in CHUNKS),
        "total_chunks": len(CHUNKS),
    }
    data.update(overrides)
    return ChunkedUploadInit(**data)


async def send_chunks(upload_service, file_id, owner_id, order, chunks=CHUNKS):
    result = None
    for number in order:
        result = await upload_service.accept_chunk(
            file_id, number, len(chunks), chunks[number], owner_id
        )
    return result


class TestChunkedUpload:
    """测试分片上传流程"""

    @pytest.mark.asyncio
    async def test_initiate_creates_pending_file(self, upload_service, owner_id):
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)

        assert file.status == FileStatus.PENDING
        assert file.path is None
        assert file.file_metadata["totalChunks"] == 3
        assert file.file_metadata["chunksReceived"] == 0
        assert file.quota_charged is False

    @pytest.mark.asyncio
    async def test_out_of_order_chunks_are_combined_in_order(
        self, upload_service, storage, db_session, owner_id
    ):
        """分片按 [2, 0, 1] 顺序到达，合并结果按 0, 1, 2 排列"""
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)

        progress = await send_chunks(upload_service, file.id, owner_id, [2, 0])
        assert progress.complete is False
        assert progress.chunks_received == 2

        progress = await send_chunks(upload_service, file.id, owner_id, [1])
        assert progress.complete is True

        file = await upload_service.complete_chunked_upload(file.id, owner_id)

        assert await storage.download_file(file.path) == b"AAAABBBBCC"
        assert file.size == 10
        assert file.status == FileStatus.ACTIVE
        assert file.file_metadata["originalChunks"] == 3
        assert "combinedAt" in file.file_metadata
        quota = await StorageQuotaRepository(db_session).get_by_owner(owner_id)
        assert quota.used_space == 10

    @pytest.mark.parametrize("order", list(itertools.permutations(range(3))))
    @pytest.mark.asyncio
    async def test_result_independent_of_arrival_order(
        self, upload_service, storage, owner_id, order
    ):
        """任意到达顺序合并结果都相同"""
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)
        await send_chunks(upload_service, file.id, owner_id, order)

        file = await upload_service.complete_chunked_upload(file.id, owner_id)

        assert await storage.download_file(file.path) == b"".join(CHUNKS)

    @pytest.mark.asyncio
    async def test_resent_chunk_overwrites(self, upload_service, storage, db_session, owner_id):
        """同一序号重复上传以最后一次为准"""
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)
        await send_chunks(upload_service, file.id, owner_id, [0, 1, 2])
        await upload_service.accept_chunk(file.id, 1, 3, b"bbbb", owner_id)

        assert await FileChunkRepository(db_session).count_by_file(file.id) == 3
        file = await upload_service.complete_chunked_upload(file.id, owner_id)

        assert await storage.download_file(file.path) == b"AAAAbbbbCC"

    @pytest.mark.asyncio
    async def test_complete_with_missing_chunks(self, upload_service, owner_id):
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)
        await send_chunks(upload_service, file.id, owner_id, [0, 2])

        with pytest.raises(IncompleteUploadException) as exc_info:
            await upload_service.complete_chunked_upload(file.id, owner_id)

        assert "[1]" in exc_info.value.detail
        file = await upload_service.get_file(file.id, owner_id)
        assert file.status == FileStatus.PENDING

    @pytest.mark.asyncio
    async def test_complete_removes_temporary_chunks(
        self, upload_service, storage, db_session, owner_id
    ):
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)
        await send_chunks(upload_service, file.id, owner_id, [0, 1, 2])

        await upload_service.complete_chunked_upload(file.id, owner_id)

        assert await FileChunkRepository(db_session).count_by_file(file.id) == 0
        for number in range(3):
            assert not await storage.file_exists(f"temp/{file.id}/chunks/{number}")

    @pytest.mark.asyncio
    async def test_complete_twice_returns_same_file(self, upload_service, owner_id, job_queue):
        """重复提交完成请求不会重复合并"""
        image = make_image((120, 90))
        parts = [image[:50], image[50:]]
        file = await upload_service.initiate_chunked_upload(
            init_request(
                original_name="look.png",
                mime_type="image/png",
                total_size=len(image),
                total_chunks=2,
            ),
            owner_id,
        )
        await send_chunks(upload_service, file.id, owner_id, [1, 0], chunks=parts)

        first = await upload_service.complete_chunked_upload(file.id, owner_id)
        second = await upload_service.complete_chunked_upload(file.id, owner_id)

        assert first.id == second.id
        assert second.status == FileStatus.QUEUED_FOR_PROCESSING
        assert job_queue.kinds() == ["generate-thumbnails"]
        assert isinstance(job_queue.jobs[0], GenerateThumbnailsJob)

    @pytest.mark.asyncio
    async def test_chunk_cleanup_failure_schedules_background_job(
        self, upload_service, storage, owner_id, job_queue
    ):
        """临时分片删除失败时投递清理任务，上传本身仍然成功"""
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)
        await send_chunks(upload_service, file.id, owner_id, [0, 1, 2])

        with patch.object(
            storage,
            "delete_file",
            AsyncMock(side_effect=StorageIOException(detail="删除失败")),
        ):
            file = await upload_service.complete_chunked_upload(file.id, owner_id)

        assert file.status == FileStatus.ACTIVE
        cleanup_jobs = [job for job in job_queue.jobs if isinstance(job, CleanupTempFilesJob)]
        assert len(cleanup_jobs) == 1
        assert cleanup_jobs[0].file_ids == [file.id]

    @pytest.mark.asyncio
    async def test_quota_checked_again_on_complete(
        self, upload_service, db_session, owner_id, test_settings
    ):
        """合并时按实际大小再次检查配额，不足时文件保持 PENDING"""
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)
        await send_chunks(upload_service, file.id, owner_id, [0, 1, 2])
        await StorageQuotaRepository(db_session).increment_used_space(
            owner_id, test_settings.DEFAULT_STORAGE_QUOTA - 5
        )

        with pytest.raises(QuotaExceededException):
            await upload_service.complete_chunked_upload(file.id, owner_id)

        file = await upload_service.get_file(file.id, owner_id)
        assert file.status == FileStatus.PENDING
        assert file.path is None

    @pytest.mark.asyncio
    async def test_missing_chunk_object_fails_upload(
        self, upload_service, storage, owner_id, job_queue
    ):
        """分片对象丢失时文件标记为 FAILED，剩余分片交给清理任务"""
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)
        await send_chunks(upload_service, file.id, owner_id, [0, 1, 2])
        await storage.delete_file(f"temp/{file.id}/chunks/1")

        with pytest.raises(StorageIOException):
            await upload_service.complete_chunked_upload(file.id, owner_id)

        file = await upload_service.get_file(file.id, owner_id)
        assert file.status == FileStatus.FAILED
        assert file.processing_history[-1]["action"] == "combine-chunks"
        assert job_queue.jobs == [CleanupTempFilesJob(file_ids=[file.id])]
        with pytest.raises(BadRequestException):
            await upload_service.complete_chunked_upload(file.id, owner_id)

    @pytest.mark.asyncio
    async def test_failed_write_schedules_chunk_cleanup(
        self, upload_service, storage, db_session, owner_id, job_queue
    ):
        """合并后写入失败时不记账，临时分片交给清理任务"""
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)
        await send_chunks(upload_service, file.id, owner_id, [0, 1, 2])

        with patch.object(
            storage,
            "upload_file",
            AsyncMock(side_effect=StorageIOException(detail="写入失败")),
        ):
            with pytest.raises(StorageIOException):
                await upload_service.complete_chunked_upload(file.id, owner_id)

        file = await upload_service.get_file(file.id, owner_id)
        assert file.status == FileStatus.FAILED
        assert file.quota_charged is False
        assert job_queue.jobs == [CleanupTempFilesJob(file_ids=[file.id])]
        quota = await StorageQuotaRepository(db_session).get_by_owner(owner_id)
        assert quota.used_space == 0

    @pytest.mark.asyncio
    async def test_delete_failed_upload_removes_chunks(
        self, upload_service, storage, db_session, owner_id
    ):
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)
        await send_chunks(upload_service, file.id, owner_id, [0, 1, 2])
        with patch.object(
            storage,
            "upload_file",
            AsyncMock(side_effect=StorageIOException(detail="写入失败")),
        ):
            with pytest.raises(StorageIOException):
                await upload_service.complete_chunked_upload(file.id, owner_id)

        await upload_service.delete_file(file.id, owner_id)

        assert await FileChunkRepository(db_session).count_by_file(file.id) == 0
        for number in range(3):
            assert not await storage.file_exists(f"temp/{file.id}/chunks/{number}")
        quota = await StorageQuotaRepository(db_session).get_by_owner(owner_id)
        assert quota.used_space == 0


class TestChunkValidation:
    """测试分片参数校验和访问控制"""

    @pytest.mark.asyncio
    async def test_chunk_number_out_of_range(self, upload_service, owner_id):
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)

        with pytest.raises(BadRequestException):
            await upload_service.accept_chunk(file.id, 3, 3, b"x", owner_id)
        with pytest.raises(BadRequestException):
            await upload_service.accept_chunk(file.id, -1, 3, b"x", owner_id)

    @pytest.mark.asyncio
    async def test_total_chunks_must_match(self, upload_service, owner_id):
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)

        with pytest.raises(BadRequestException):
            await upload_service.accept_chunk(file.id, 0, 4, b"x", owner_id)

    @pytest.mark.asyncio
    async def test_empty_and_oversized_chunks(self, upload_service, owner_id, test_settings):
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)

        with pytest.raises(BadRequestException):
            await upload_service.accept_chunk(file.id, 0, 3, b"", owner_id)
        with pytest.raises(FileTooLargeException):
            await upload_service.accept_chunk(
                file.id, 0, 3, b"x" * (test_settings.MAX_CHUNK_SIZE + 1), owner_id
            )

    @pytest.mark.asyncio
    async def test_only_owner_can_send_chunks(
        self, upload_service, owner_id, other_user_id
    ):
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)

        with pytest.raises(AuthorizationException):
            await upload_service.accept_chunk(file.id, 0, 3, b"x", other_user_id)
        with pytest.raises(AuthorizationException):
            await upload_service.complete_chunked_upload(file.id, other_user_id)

    @pytest.mark.asyncio
    async def test_unknown_file(self, upload_service, owner_id):
        with pytest.raises(NotFoundException):
            await upload_service.accept_chunk(uuid.uuid4(), 0, 1, b"x", owner_id)

    @pytest.mark.asyncio
    async def test_chunks_rejected_after_completion(self, upload_service, owner_id):
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)
        await send_chunks(upload_service, file.id, owner_id, [0, 1, 2])
        await upload_service.complete_chunked_upload(file.id, owner_id)

        with pytest.raises(BadRequestException):
            await upload_service.accept_chunk(file.id, 0, 3, b"late", owner_id)

    @pytest.mark.asyncio
    async def test_initiate_checks_declared_size_against_quota(
        self, upload_service, db_session, owner_id
    ):
        await StorageQuotaRepository(db_session).create(
            obj_in={"owner_id": owner_id, "total_space": 5, "used_space": 0}
        )

        with pytest.raises(QuotaExceededException):
            await upload_service.initiate_chunked_upload(init_request(), owner_id)

    @pytest.mark.asyncio
    async def test_delete_pending_upload_removes_chunks(
        self, upload_service, storage, db_session, owner_id
    ):
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)
        await send_chunks(upload_service, file.id, owner_id, [0, 1])

        await upload_service.delete_file(file.id, owner_id)

        assert await FileChunkRepository(db_session).count_by_file(file.id) == 0
        assert not await storage.file_exists(f"temp/{file.id}/chunks/0")


@pytest_asyncio.fixture
async def file_session_maker(tmp_path):
    """基于文件的SQLite数据库，多个会话使用各自的连接"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'uploads.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


class TestConcurrentCompletion:
    """测试同一文件的并发完成请求"""

    def make_service(self, session, storage, encryption, order_access, job_queue, config):
        return UploadService(
            session,
            storage=storage,
            encryption=encryption,
            dispatcher=ProcessingDispatcher(job_queue, thumbnail_sizes=[100]),
            order_access=order_access,
            config=config,
        )

    @pytest.mark.asyncio
    async def test_parallel_completion_charges_quota_once(
        self,
        file_session_maker,
        storage,
        encryption,
        order_access,
        job_queue,
        test_settings,
        owner_id,
    ):
        async with file_session_maker() as first, file_session_maker() as second:
            services = [
                self.make_service(
                    session, storage, encryption, order_access, job_queue, test_settings
                )
                for session in (first, second)
            ]
            file = await services[0].initiate_chunked_upload(init_request(), owner_id)
            await send_chunks(services[0], file.id, owner_id, [0, 1, 2])

            results = await asyncio.gather(
                *(service.complete_chunked_upload(file.id, owner_id) for service in services)
            )

        assert [result.id for result in results] == [file.id, file.id]

        async with file_session_maker() as session:
            quota = await StorageQuotaRepository(session).get_by_owner(owner_id)
            stored = await FileRepository(session).get_by_id(file.id)

        assert quota.used_space == 10
        assert stored.size == 10
        assert stored.status == FileStatus.ACTIVE
        uploads = [e for e in stored.processing_history if e["action"] == "upload"]
        assert len(uploads) == 1

    @pytest.mark.asyncio
    async def test_claim_released_when_chunks_missing(
        self, upload_service, db_session, owner_id
    ):
        """缺少分片时释放占用，补齐后可以再次完成"""
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)
        await send_chunks(upload_service, file.id, owner_id, [0, 1])

        with pytest.raises(IncompleteUploadException):
            await upload_service.complete_chunked_upload(file.id, owner_id)

        await send_chunks(upload_service, file.id, owner_id, [2])
        file = await upload_service.complete_chunked_upload(file.id, owner_id)

        assert file.status == FileStatus.ACTIVE
        quota = await StorageQuotaRepository(db_session).get_by_owner(owner_id)
        assert quota.used_space == 10

    @pytest.mark.asyncio
    async def test_claimed_file_rejects_new_chunks(self, upload_service, db_session, owner_id):
        file = await upload_service.initiate_chunked_upload(init_request(), owner_id)
        await send_chunks(upload_service, file.id, owner_id, [0, 1])
        file_repo = FileRepository(db_session)

        assert await file_repo.claim_for_completion(file.id) is True
        assert await file_repo.claim_for_completion(file.id) is False
        await db_session.refresh(file)

        with pytest.raises(BadRequestException):
            await upload_service.accept_chunk(file.id, 2, 3, CHUNKS[2], owner_id)
