from typing import Any, Dict

from loguru import logger

from fileflow.core.config import settings
from fileflow.schemas.jobs import ProcessingJob, parse_job
from fileflow.services.file_processor import FileProcessor
from fileflow.tasks.base import BaseTask, async_task, get_async_db_session


async def _run_job(task: BaseTask, job: ProcessingJob) -> Dict[str, Any]:
    async for session in get_async_db_session():
        processor = FileProcessor(
            session, task.resources.storage, task.resources.encryption
        )
        return await processor.handle(job)


@async_task(
    name="tasks.file.generate_thumbnails",
    queue="file_tasks",
    max_retries=settings.PROCESSING_MAX_RETRIES,
)
async def generate_thumbnails_task(self, payload: Dict[str, Any]):
    """
    生成图片缩略图

    参数:
        payload: GenerateThumbnailsJob 的JSON载荷
    """
    return await _run_job(self, parse_job(payload))


@async_task(
    name="tasks.file.extract_pdf_metadata",
    queue="file_tasks",
    max_retries=settings.PROCESSING_MAX_RETRIES,
)
async def extract_pdf_metadata_task(self, payload: Dict[str, Any]):
    """提取PDF页数、文档信息和文本摘要"""
    return await _run_job(self, parse_job(payload))


@async_task(
    name="tasks.file.generate_pdf_thumbnail",
    queue="file_tasks",
    max_retries=settings.PROCESSING_MAX_RETRIES,
)
async def generate_pdf_thumbnail_task(self, payload: Dict[str, Any]):
    """生成PDF封面占位图"""
    return await _run_job(self, parse_job(payload))


@async_task(name="tasks.file.cleanup_temp_files", queue="file_tasks", max_retries=1)
async def cleanup_temp_files_task(self, payload: Dict[str, Any]):
    """清理临时分片，部分失败不重试"""
    return await _run_job(self, parse_job(payload))


@async_task(name="tasks.file.cleanup_expired_chunks", queue="scheduled", max_retries=0)
async def cleanup_expired_chunks_task(self):
    """
    定时清理超时未完成的分片上传
    """
    async for session in get_async_db_session():
        processor = FileProcessor(
            session, self.resources.storage, self.resources.encryption
        )
        result = await processor.cleanup_expired_chunks()
        logger.info(f"过期分片清理结果: {result}")
        return result
