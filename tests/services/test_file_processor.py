"""
测试派生产物处理：缩略图、PDF元数据、PDF封面和临时分片清理
"""

import io
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from PIL import Image

from fileflow.core.exceptions import StorageIOException
from fileflow.db.repositories.file_chunk_repository import FileChunkRepository
from fileflow.db.repositories.file_repository import FileRepository
from fileflow.schemas.file import ChunkedUploadInit, FileStatus, SingleUploadRequest
from fileflow.schemas.jobs import (CleanupTempFilesJob, ExtractPdfMetadataJob,
                                   GeneratePdfThumbnailJob, GenerateThumbnailsJob)
from fileflow.services.file_processor import FileProcessor, fit_inside
from fileflow.utils.datetime import now_utc
from tests.utils.fakes import make_image, make_pdf


@pytest.fixture
def processor(db_session, storage, encryption) -> FileProcessor:
    return FileProcessor(
        db_session,
        storage=storage,
        encryption=encryption,
        pdf_thumbnail_size=200,
        text_snippet_length=50,
    )


async def upload_image(upload_service, owner_id, content=None, **overrides):
    request = SingleUploadRequest(
        original_name="photo.png", mime_type="image/png", **overrides
    )
    return await upload_service.upload_file(content or make_image(), request, owner_id)


async def upload_pdf(upload_service, owner_id, content=None):
    request = SingleUploadRequest(original_name="sheet.pdf", mime_type="application/pdf")
    return await upload_service.upload_file(content or make_pdf(), request, owner_id)


async def reload(db_session, file_id):
    file = await FileRepository(db_session).get_by_id(file_id)
    await db_session.refresh(file)
    return file


class TestFitInside:
    """测试缩放尺寸计算"""

    def test_scales_down_keeping_ratio(self):
        assert fit_inside(800, 600, 100) == (100, 75)
        assert fit_inside(600, 800, 100) == (75, 100)

    def test_never_upscales(self):
        assert fit_inside(80, 60, 300) == (80, 60)

    def test_minimum_one_pixel(self):
        assert fit_inside(10000, 1, 100) == (100, 1)


class TestThumbnails:
    """测试图片缩略图"""

    @pytest.mark.asyncio
    async def test_generate_thumbnails(
        self, processor, upload_service, storage, db_session, owner_id, job_queue
    ):
        file = await upload_image(upload_service, owner_id)
        job = job_queue.jobs[0]

        result = await processor.handle(job)

        assert [t["size"] for t in result["thumbnails"]] == [100, 300]
        file = await reload(db_session, file.id)
        assert file.status == FileStatus.ACTIVE
        assert file.file_metadata["width"] == 800
        assert file.file_metadata["height"] == 600
        assert file.file_metadata["format"] == "PNG"
        assert "thumbnailsGeneratedAt" in file.file_metadata
        assert file.thumbnail_path == f"{file.storage_prefix}/thumbnails/100.jpg"
        assert {v["type"] for v in file.versions} == {"thumbnail-100", "thumbnail-300"}

        small = Image.open(io.BytesIO(await storage.download_file(file.thumbnail_path)))
        assert small.size == (100, 75)
        assert small.format == "JPEG"

        actions = [(e["action"], e["status"]) for e in file.processing_history]
        assert ("generate-thumbnails", "processing") in actions
        assert ("generate-thumbnails", "completed") in actions

    @pytest.mark.asyncio
    async def test_small_image_is_not_upscaled(
        self, processor, upload_service, owner_id, job_queue
    ):
        await upload_image(upload_service, owner_id, make_image((80, 60)))

        result = await processor.handle(job_queue.jobs[0])

        assert all((t["width"], t["height"]) == (80, 60) for t in result["thumbnails"])

    @pytest.mark.asyncio
    async def test_rerun_replaces_versions(
        self, processor, upload_service, db_session, owner_id, job_queue
    ):
        """重复投递的任务不会产生重复版本"""
        file = await upload_image(upload_service, owner_id)
        job = job_queue.jobs[0]

        await processor.handle(job)
        await processor.handle(job)

        file = await reload(db_session, file.id)
        assert len(file.versions) == 2
        assert file.status == FileStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_encrypted_image(
        self, processor, upload_service, db_session, owner_id, job_queue
    ):
        """加密文件先解密再处理"""
        file = await upload_image(upload_service, owner_id, encrypt=True)

        result = await processor.handle(job_queue.jobs[0])

        assert len(result["thumbnails"]) == 2
        file = await reload(db_session, file.id)
        assert file.file_metadata["width"] == 800

    @pytest.mark.asyncio
    async def test_failure_is_recorded_without_failing_file(
        self, processor, upload_service, storage, db_session, owner_id, job_queue
    ):
        """处理失败只记录错误，文件仍然可用；重新处理成功后清除错误"""
        file = await upload_image(upload_service, owner_id, b"not really a png")
        job = job_queue.jobs[0]

        with pytest.raises(Exception):
            await processor.handle(job)

        file = await reload(db_session, file.id)
        assert file.status == FileStatus.ACTIVE
        assert file.file_metadata["thumbnailsError"]
        assert "thumbnailsErrorTime" in file.file_metadata
        assert file.processing_history[-2]["status"] == "failed"

        await storage.upload_file(make_image(), file.path)
        await processor.handle(job)

        file = await reload(db_session, file.id)
        assert "thumbnailsError" not in file.file_metadata
        assert "thumbnailsErrorTime" not in file.file_metadata
        assert file.file_metadata["thumbnails"]

    @pytest.mark.asyncio
    async def test_storage_error_is_recorded(
        self, processor, upload_service, storage, db_session, owner_id, job_queue
    ):
        file = await upload_image(upload_service, owner_id)

        with patch.object(
            storage,
            "download_file",
            AsyncMock(side_effect=StorageIOException(detail="读取超时")),
        ):
            with pytest.raises(StorageIOException):
                await processor.handle(job_queue.jobs[0])

        file = await reload(db_session, file.id)
        assert file.file_metadata["thumbnailsError"] == "读取超时"

    @pytest.mark.asyncio
    async def test_missing_file_is_skipped(self, processor):
        job = GenerateThumbnailsJob(file_id=uuid.uuid4(), sizes=[100])

        result = await processor.handle(job)

        assert result["skipped"] is True

    @pytest.mark.asyncio
    async def test_deleted_file_is_skipped(
        self, processor, upload_service, owner_id, job_queue
    ):
        file = await upload_image(upload_service, owner_id)
        await upload_service.delete_file(file.id, owner_id)

        result = await processor.handle(job_queue.jobs[0])

        assert result["skipped"] is True


class TestPdfProcessing:
    """测试PDF元数据和封面"""

    @pytest.mark.asyncio
    async def test_pdf_upload_queues_both_jobs(self, upload_service, owner_id, job_queue):
        await upload_pdf(upload_service, owner_id)

        assert job_queue.kinds() == ["extract-pdf-metadata", "generate-pdf-thumbnail"]

    @pytest.mark.asyncio
    async def test_extract_metadata(
        self, processor, upload_service, db_session, owner_id
    ):
        file = await upload_pdf(upload_service, owner_id, make_pdf(pages=3))

        result = await processor.handle(ExtractPdfMetadataJob(file_id=file.id))

        assert result["page_count"] == 3
        file = await reload(db_session, file.id)
        metadata = file.file_metadata
        assert metadata["pageCount"] == 3
        assert metadata["pdfInfo"]["Title"] == "Pattern Sheet"
        assert metadata["pdfVersion"]
        assert metadata["textLength"] == len(metadata["textSnippet"])
        assert file.status == FileStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_extract_metadata_is_idempotent(
        self, processor, upload_service, db_session, owner_id
    ):
        """重复提取结果相同"""
        file = await upload_pdf(upload_service, owner_id)
        keys = ["pageCount", "pdfInfo", "pdfVersion", "textSnippet", "textLength"]

        await processor.handle(ExtractPdfMetadataJob(file_id=file.id))
        first = {key: (await reload(db_session, file.id)).file_metadata[key] for key in keys}
        await processor.handle(ExtractPdfMetadataJob(file_id=file.id))
        second = {key: (await reload(db_session, file.id)).file_metadata[key] for key in keys}

        assert first == second

    @pytest.mark.asyncio
    async def test_pdf_thumbnail(
        self, processor, upload_service, storage, db_session, owner_id
    ):
        file = await upload_pdf(upload_service, owner_id)

        await processor.handle(GeneratePdfThumbnailJob(file_id=file.id))

        file = await reload(db_session, file.id)
        metadata = file.file_metadata
        assert metadata["pdfThumbnailPath"] == f"{file.storage_prefix}/pdf-thumbnail.png"
        # 612x792 的页面缩放到 200 的方框内
        assert metadata["pdfThumbnailHeight"] == 200
        assert metadata["pdfThumbnailWidth"] < 200
        assert file.thumbnail_path == metadata["pdfThumbnailPath"]
        assert [v["type"] for v in file.versions] == ["pdf-thumbnail"]
        cover = Image.open(io.BytesIO(await storage.download_file(file.thumbnail_path)))
        assert cover.format == "PNG"

    @pytest.mark.asyncio
    async def test_jobs_complete_in_any_order(
        self, processor, upload_service, db_session, owner_id, job_queue
    ):
        """两个PDF任务写入不同的键，完成顺序不影响结果"""
        file = await upload_pdf(upload_service, owner_id)

        for job in reversed(job_queue.jobs):
            await processor.handle(job)

        metadata = (await reload(db_session, file.id)).file_metadata
        assert metadata["pageCount"] == 2
        assert metadata["pdfThumbnailPath"]

    @pytest.mark.asyncio
    async def test_corrupt_pdf(self, processor, upload_service, db_session, owner_id):
        file = await upload_pdf(upload_service, owner_id, b"%PDF-1.4 broken")

        with pytest.raises(Exception):
            await processor.handle(ExtractPdfMetadataJob(file_id=file.id))

        file = await reload(db_session, file.id)
        assert file.status == FileStatus.ACTIVE
        assert file.file_metadata["pdfMetadataError"]


class TestTempFileCleanup:
    """测试临时分片清理"""

    async def _pending_upload(self, upload_service, owner_id, chunks=2):
        file = await upload_service.initiate_chunked_upload(
            ChunkedUploadInit(
                original_name="draft.txt",
                mime_type="text/plain",
                total_size=chunks * 4,
                total_chunks=chunks + 1,
            ),
            owner_id,
        )
        for number in range(chunks):
            await upload_service.accept_chunk(file.id, number, chunks + 1, b"data", owner_id)
        return file

    @pytest.mark.asyncio
    async def test_cleanup_temp_files(
        self, processor, upload_service, storage, db_session, owner_id
    ):
        file = await self._pending_upload(upload_service, owner_id)

        result = await processor.handle(CleanupTempFilesJob(file_ids=[file.id]))

        assert result == {"cleaned": 1, "failed": 0}
        assert await FileChunkRepository(db_session).count_by_file(file.id) == 0
        assert not await storage.file_exists(f"temp/{file.id}/chunks/0")

    @pytest.mark.asyncio
    async def test_partial_cleanup_failure(
        self, processor, upload_service, storage, db_session, owner_id
    ):
        """单个文件清理失败不影响其他文件"""
        good = await self._pending_upload(upload_service, owner_id)
        bad = await self._pending_upload(upload_service, owner_id)
        real_delete = storage.delete_file

        async def flaky_delete(path):
            if str(bad.id) in path:
                raise StorageIOException(detail="删除失败")
            await real_delete(path)

        with patch.object(storage, "delete_file", AsyncMock(side_effect=flaky_delete)):
            result = await processor.cleanup_temp_files([good.id, bad.id])

        assert result == {"cleaned": 1, "failed": 1}
        chunk_repo = FileChunkRepository(db_session)
        assert await chunk_repo.count_by_file(good.id) == 0
        assert await chunk_repo.count_by_file(bad.id) == 2

    @pytest.mark.asyncio
    async def test_cleanup_expired_chunks(
        self, processor, upload_service, db_session, owner_id
    ):
        """超时未完成的上传被标记为失败并清理分片"""
        file = await self._pending_upload(upload_service, owner_id)

        result = await processor.cleanup_expired_chunks(now=now_utc())
        assert result["expired"] == 0

        result = await processor.cleanup_expired_chunks(
            now=now_utc() + timedelta(hours=48)
        )

        assert result == {"expired": 1, "cleaned": 1, "failed": 0}
        file = await reload(db_session, file.id)
        assert file.status == FileStatus.FAILED
        assert file.file_metadata["uploadError"] == "分片上传已超时"
        assert await FileChunkRepository(db_session).count_by_file(file.id) == 0

    @pytest.mark.asyncio
    async def test_expired_chunks_of_failed_upload_are_swept(
        self, processor, upload_service, storage, db_session, owner_id
    ):
        """合并失败的上传留下的分片也会被定时任务清理"""
        file = await self._pending_upload(upload_service, owner_id)
        await FileRepository(db_session).mark_failed(
            file, action="combine-chunks", error="读取分片失败"
        )

        result = await processor.cleanup_expired_chunks(
            now=now_utc() + timedelta(hours=48)
        )

        assert result == {"expired": 1, "cleaned": 1, "failed": 0}
        file = await reload(db_session, file.id)
        assert file.status == FileStatus.FAILED
        assert file.processing_history[-1]["action"] == "combine-chunks"
        assert await FileChunkRepository(db_session).count_by_file(file.id) == 0
        assert not await storage.file_exists(f"temp/{file.id}/chunks/0")
