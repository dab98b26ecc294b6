from abc import ABC, abstractmethod
from typing import List, Optional, Sequence
from uuid import UUID

from loguru import logger

from fileflow.db.models.file import File
from fileflow.db.repositories.file_repository import FileRepository
from fileflow.schemas.file import FileStatus
from fileflow.schemas.jobs import (JOB_TASK_NAMES, CleanupTempFilesJob,
                                   ExtractPdfMetadataJob, GeneratePdfThumbnailJob,
                                   GenerateThumbnailsJob, ProcessingJob)
from fileflow.utils.datetime import now_iso


class JobQueue(ABC):
    """
    持久化任务队列接口（至少投递一次）
    """

    @abstractmethod
    def enqueue(self, job: ProcessingJob) -> str:
        """投递任务，返回任务ID"""
        pass


class CeleryJobQueue(JobQueue):
    """
    通过Celery投递任务，载荷按 kind 序列化为JSON
    """

    def __init__(self, celery_app=None):
        if celery_app is None:
            from fileflow.tasks.celery import celery_app
        self.celery_app = celery_app

    def enqueue(self, job: ProcessingJob) -> str:
        task_name = JOB_TASK_NAMES[job.kind]
        result = self.celery_app.send_task(
            task_name,
            kwargs={"payload": job.model_dump(mode="json")},
            queue="file_tasks",
        )
        logger.info(f"任务已投递: {task_name}, 任务ID: {result.id}")
        return result.id


class ProcessingDispatcher:
    """
    文件上传成功后按类型投递派生产物任务
    """

    def __init__(self, job_queue: JobQueue, thumbnail_sizes: Sequence[int]):
        self.job_queue = job_queue
        self.thumbnail_sizes = list(thumbnail_sizes)

    def plan_jobs(self, file: File) -> List[ProcessingJob]:
        if file.is_image and self.thumbnail_sizes:
            return [GenerateThumbnailsJob(file_id=file.id, sizes=self.thumbnail_sizes)]
        if file.is_pdf:
            return [
                ExtractPdfMetadataJob(file_id=file.id),
                GeneratePdfThumbnailJob(file_id=file.id),
            ]
        return []

    async def dispatch(self, file_repo: FileRepository, file: File) -> File:
        """
        投递任务并推进状态

        没有派生产物的文件直接变为 ACTIVE。投递失败不会影响上传结果，
        只在元数据中记录 processingError，文件同样变为 ACTIVE。
        """
        file_id = file.id
        jobs = self.plan_jobs(file)
        if not jobs:
            return await file_repo.transition(file_id, FileStatus.ACTIVE, "activate")

        # 先改状态再投递，worker 读到的一定是 QUEUED_FOR_PROCESSING 之后的状态
        file = await file_repo.transition(
            file_id, FileStatus.QUEUED_FOR_PROCESSING, "queue-processing"
        )
        try:
            for job in jobs:
                self.job_queue.enqueue(job)
        except Exception as e:
            logger.error(f"处理任务投递失败: {file_id}, 错误: {str(e)}")
            await file_repo.merge_metadata(
                file_id,
                {"processingError": str(e), "processingErrorTime": now_iso()},
                history=("queue-processing", "failed", str(e)),
            )
            return await file_repo.transition(file_id, FileStatus.ACTIVE, "activate")

        logger.info(f"文件 {file_id} 已投递 {len(jobs)} 个处理任务")
        return file

    def schedule_cleanup(self, file_ids: List[UUID]) -> Optional[str]:
        """
        投递临时分片清理任务

        投递失败只记录日志，过期分片还会被定时任务清理。
        """
        try:
            return self.job_queue.enqueue(CleanupTempFilesJob(file_ids=file_ids))
        except Exception as e:
            logger.error(f"清理任务投递失败: {file_ids}, 错误: {str(e)}")
            return None
