"""
派生产物处理

缩略图、PDF元数据和PDF封面由不同任务独立生成，各自只写入自己的
元数据键，任务可以乱序完成或被重复投递。处理失败只在元数据中记录
`<字段>Error`，不会把文件标记为 FAILED。
"""

import io
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from loguru import logger
from PIL import Image, ImageDraw, ImageOps
from pypdf import PdfReader
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fileflow.core.config import settings
from fileflow.core.exceptions import ProcessingException
from fileflow.db.models.file import File
from fileflow.db.repositories.file_chunk_repository import FileChunkRepository
from fileflow.db.repositories.file_repository import FileRepository
from fileflow.monitoring.metrics import PROCESSING_JOB_COUNT
from fileflow.plugins.storage.base import StorageOptions, StorageProvider
from fileflow.schemas.file import FileStatus
from fileflow.schemas.jobs import (CleanupTempFilesJob, ExtractPdfMetadataJob,
                                   GeneratePdfThumbnailJob, GenerateThumbnailsJob,
                                   ProcessingJob)
from fileflow.services.content import read_file_content
from fileflow.services.encryption_service import EncryptionService
from fileflow.utils.datetime import now_iso, now_utc

# A4 纵向（点），PDF 没有页面时使用
DEFAULT_PAGE_SIZE = (595, 842)


def fit_inside(width: int, height: int, size: int) -> Tuple[int, int]:
    """
    等比缩放到 size x size 的方框内，不放大
    """
    scale = min(size / width, size / height, 1.0)
    return max(1, round(width * scale)), max(1, round(height * scale))


def render_thumbnail(image: Image.Image, size: int) -> Tuple[bytes, int, int]:
    """
    生成JPEG缩略图，返回 (内容, 宽, 高)
    """
    width, height = fit_inside(image.width, image.height, size)
    thumbnail = image
    if (width, height) != image.size:
        thumbnail = image.resize((width, height), Image.Resampling.LANCZOS)
    if thumbnail.mode not in ("RGB", "L"):
        thumbnail = thumbnail.convert("RGB")

    buffer = io.BytesIO()
    thumbnail.save(buffer, format="JPEG", quality=85)
    return buffer.getvalue(), width, height


def render_pdf_placeholder(
    page_size: Tuple[float, float], page_count: int, size: int
) -> Tuple[bytes, int, int]:
    """
    按首页比例生成封面占位图（PNG）
    """
    width, height = fit_inside(
        max(1, int(page_size[0])), max(1, int(page_size[1])), size
    )
    image = Image.new("RGB", (width, height), "white")
    draw = ImageDraw.Draw(image)
    draw.rectangle([0, 0, width - 1, height - 1], outline=(160, 160, 160))
    draw.text((8, 8), "PDF", fill=(200, 30, 30))
    draw.text((8, 24), f"{page_count} pages", fill=(80, 80, 80))

    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue(), width, height


class FileProcessor:
    """
    异步任务的处理逻辑，与Celery解耦以便直接测试
    """

    def __init__(
        self,
        db_session: AsyncSession,
        storage: StorageProvider,
        encryption: EncryptionService,
        pdf_thumbnail_size: int = settings.PDF_THUMBNAIL_SIZE,
        text_snippet_length: int = settings.PDF_TEXT_SNIPPET_LENGTH,
    ):
        self.db = db_session
        self.storage = storage
        self.encryption = encryption
        self.pdf_thumbnail_size = pdf_thumbnail_size
        self.text_snippet_length = text_snippet_length
        self.file_repo = FileRepository(db_session)
        self.chunk_repo = FileChunkRepository(db_session)

    async def handle(self, job: ProcessingJob) -> Dict[str, Any]:
        """
        按任务类型分发
        """
        if isinstance(job, GenerateThumbnailsJob):
            return await self.generate_thumbnails(job)
        if isinstance(job, ExtractPdfMetadataJob):
            return await self.extract_pdf_metadata(job)
        if isinstance(job, GeneratePdfThumbnailJob):
            return await self.generate_pdf_thumbnail(job)
        if isinstance(job, CleanupTempFilesJob):
            return await self.cleanup_temp_files(job.file_ids)
        raise ProcessingException(detail=f"未知的任务类型: {job.kind}")

    async def _start(self, file_id: UUID, kind: str) -> Optional[File]:
        file = await self.file_repo.get_existing(file_id)
        if file is None:
            logger.warning(f"文件不存在或已删除，跳过任务 {kind}: {file_id}")
            PROCESSING_JOB_COUNT.labels(kind=kind, outcome="skipped").inc()
            return None
        if file.path is None:
            logger.warning(f"文件尚未写入存储，跳过任务 {kind}: {file_id}")
            PROCESSING_JOB_COUNT.labels(kind=kind, outcome="skipped").inc()
            return None
        await self.file_repo.transition(file_id, FileStatus.PROCESSING, kind)
        return file

    async def _complete(
        self,
        file_id: UUID,
        kind: str,
        field: str,
        patch: Dict[str, Any],
        versions: Optional[List[Dict[str, Any]]] = None,
        default_thumbnail: Optional[str] = None,
    ) -> None:
        await self.file_repo.merge_metadata(
            file_id,
            patch,
            remove_keys=(f"{field}Error", f"{field}ErrorTime"),
            versions=versions,
            default_thumbnail=default_thumbnail,
            history=(kind, "completed", None),
        )
        await self.file_repo.transition(file_id, FileStatus.ACTIVE, "activate")
        PROCESSING_JOB_COUNT.labels(kind=kind, outcome="completed").inc()

    async def _fail(self, file_id: UUID, kind: str, field: str, error: Exception) -> None:
        """
        记录派生产物失败，文件本身仍然可用
        """
        message = getattr(error, "detail", None) or str(error)
        logger.error(f"任务 {kind} 处理失败: {file_id}, 错误: {message}")
        PROCESSING_JOB_COUNT.labels(kind=kind, outcome="failed").inc()

        await self.db.rollback()
        await self.file_repo.merge_metadata(
            file_id,
            {f"{field}Error": message, f"{field}ErrorTime": now_iso()},
            history=(kind, "failed", message),
        )
        await self.file_repo.transition(file_id, FileStatus.ACTIVE, "activate")

    async def generate_thumbnails(self, job: GenerateThumbnailsJob) -> Dict[str, Any]:
        file = await self._start(job.file_id, job.kind)
        if file is None:
            return {"file_id": str(job.file_id), "skipped": True}

        try:
            content = await read_file_content(self.storage, self.encryption, file)
            source = Image.open(io.BytesIO(content))
            image_format = source.format
            image = ImageOps.exif_transpose(source)

            thumbnails = []
            versions = []
            for size in sorted(set(job.sizes)):
                data, width, height = render_thumbnail(image, size)
                path = f"{file.storage_prefix}/thumbnails/{size}.jpg"
                await self.storage.upload_file(
                    data, path, StorageOptions(content_type="image/jpeg")
                )
                thumbnails.append(
                    {"size": size, "path": path, "width": width, "height": height}
                )
                versions.append({"type": f"thumbnail-{size}", "path": path, "size": len(data)})
        except Exception as e:
            await self._fail(job.file_id, job.kind, "thumbnails", e)
            raise

        patch = {
            "thumbnails": thumbnails,
            "thumbnailsGeneratedAt": now_iso(),
            "width": image.width,
            "height": image.height,
            "format": image_format,
        }
        await self._complete(
            job.file_id,
            job.kind,
            "thumbnails",
            patch,
            versions=versions,
            default_thumbnail=thumbnails[0]["path"],
        )
        logger.info(f"缩略图生成完成: {job.file_id}, 尺寸: {[t['size'] for t in thumbnails]}")
        return {"file_id": str(job.file_id), "thumbnails": thumbnails}

    async def extract_pdf_metadata(self, job: ExtractPdfMetadataJob) -> Dict[str, Any]:
        file = await self._start(job.file_id, job.kind)
        if file is None:
            return {"file_id": str(job.file_id), "skipped": True}

        try:
            content = await read_file_content(self.storage, self.encryption, file)
            reader = PdfReader(io.BytesIO(content))
            text = "".join(page.extract_text() or "" for page in reader.pages)
            document_info = reader.metadata or {}
            info = {
                str(key).lstrip("/"): str(document_info[key]) for key in document_info
            }
            patch = {
                "pageCount": len(reader.pages),
                "pdfInfo": info,
                "pdfVersion": reader.pdf_header.replace("%PDF-", ""),
                "textSnippet": text[: self.text_snippet_length],
                "textLength": len(text),
            }
        except Exception as e:
            await self._fail(job.file_id, job.kind, "pdfMetadata", e)
            raise

        await self._complete(job.file_id, job.kind, "pdfMetadata", patch)
        logger.info(f"PDF元数据提取完成: {job.file_id}, 页数: {patch['pageCount']}")
        return {"file_id": str(job.file_id), "page_count": patch["pageCount"]}

    async def generate_pdf_thumbnail(self, job: GeneratePdfThumbnailJob) -> Dict[str, Any]:
        file = await self._start(job.file_id, job.kind)
        if file is None:
            return {"file_id": str(job.file_id), "skipped": True}

        try:
            content = await read_file_content(self.storage, self.encryption, file)
            reader = PdfReader(io.BytesIO(content))
            page_size = DEFAULT_PAGE_SIZE
            if reader.pages:
                box = reader.pages[0].mediabox
                page_size = (float(box.width), float(box.height))

            data, width, height = render_pdf_placeholder(
                page_size, len(reader.pages), self.pdf_thumbnail_size
            )
            path = f"{file.storage_prefix}/pdf-thumbnail.png"
            await self.storage.upload_file(
                data, path, StorageOptions(content_type="image/png")
            )
        except Exception as e:
            await self._fail(job.file_id, job.kind, "pdfThumbnail", e)
            raise

        patch = {
            "pdfThumbnailPath": path,
            "pdfThumbnailWidth": width,
            "pdfThumbnailHeight": height,
        }
        await self._complete(
            job.file_id,
            job.kind,
            "pdfThumbnail",
            patch,
            versions=[{"type": "pdf-thumbnail", "path": path, "size": len(data)}],
            default_thumbnail=path,
        )
        logger.info(f"PDF封面生成完成: {job.file_id}")
        return {"file_id": str(job.file_id), "path": path}

    async def cleanup_temp_files(self, file_ids: List[UUID]) -> Dict[str, Any]:
        """
        尽力清理临时分片，单个文件失败只计数不影响其他文件
        """
        cleaned = 0
        failed = 0
        for file_id in file_ids:
            try:
                chunks = await self.chunk_repo.get_by_file(file_id)
                for chunk in chunks:
                    await self.storage.delete_file(chunk.path)
                await self.chunk_repo.delete_by_file(file_id)
                cleaned += 1
            except Exception as e:
                failed += 1
                logger.error(f"临时分片清理失败: {file_id}, 错误: {str(e)}")
                await self.db.rollback()

        outcome = "completed" if not failed else "partial"
        PROCESSING_JOB_COUNT.labels(kind="cleanup-temp-files", outcome=outcome).inc()
        logger.info(f"临时分片清理完成: 成功 {cleaned}, 失败 {failed}")
        return {"cleaned": cleaned, "failed": failed}

    async def cleanup_expired_chunks(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        清理超时未完成的分片上传，并把对应文件标记为失败
        """
        file_ids = await self.chunk_repo.get_expired_file_ids(now or now_utc())
        if not file_ids:
            return {"expired": 0, "cleaned": 0, "failed": 0}

        for file_id in file_ids:
            try:
                file = await self.file_repo.get_for_update(file_id)
                if file is not None and file.status == FileStatus.PENDING:
                    await self.file_repo.mark_failed(
                        file, action="expire-chunks", error="分片上传已超时"
                    )
            except SQLAlchemyError as e:
                logger.error(f"标记过期上传失败: {file_id}, 错误: {str(e)}")
                await self.db.rollback()

        result = await self.cleanup_temp_files(file_ids)
        return {"expired": len(file_ids), **result}
