"""
异步处理任务的载荷定义

每种任务都有固定的 kind 标签和经过校验的字段，分发器和 worker
按 kind 选择处理逻辑，不依赖载荷中是否"碰巧"存在某个字段。
"""

from typing import Annotated, Dict, List, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, TypeAdapter


class BaseJob(BaseModel):
    """
    任务载荷基类
    """

    model_config = ConfigDict(frozen=True)


class GenerateThumbnailsJob(BaseJob):
    kind: Literal["generate-thumbnails"] = "generate-thumbnails"
    file_id: UUID
    sizes: List[PositiveInt] = Field(..., min_length=1)


class ExtractPdfMetadataJob(BaseJob):
    kind: Literal["extract-pdf-metadata"] = "extract-pdf-metadata"
    file_id: UUID


class GeneratePdfThumbnailJob(BaseJob):
    kind: Literal["generate-pdf-thumbnail"] = "generate-pdf-thumbnail"
    file_id: UUID


class CleanupTempFilesJob(BaseJob):
    kind: Literal["cleanup-temp-files"] = "cleanup-temp-files"
    file_ids: List[UUID] = Field(..., min_length=1)


ProcessingJob = Annotated[
    Union[
        GenerateThumbnailsJob,
        ExtractPdfMetadataJob,
        GeneratePdfThumbnailJob,
        CleanupTempFilesJob,
    ],
    Field(discriminator="kind"),
]

processing_job_adapter: TypeAdapter = TypeAdapter(ProcessingJob)

# 任务类型 -> Celery任务名称
JOB_TASK_NAMES: Dict[str, str] = {
    "generate-thumbnails": "tasks.file.generate_thumbnails",
    "extract-pdf-metadata": "tasks.file.extract_pdf_metadata",
    "generate-pdf-thumbnail": "tasks.file.generate_pdf_thumbnail",
    "cleanup-temp-files": "tasks.file.cleanup_temp_files",
}


def parse_job(payload: Dict) -> ProcessingJob:
    """
    把队列中的JSON载荷还原为具体的任务类型
    """
    return processing_job_adapter.validate_python(payload)
