from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import AliasChoices, Field

from fileflow.schemas.base import BaseModelSchema, BaseSchema


class FileStatus(str, Enum):
    """
    文件状态枚举
    """

    PENDING = "pending"
    UPLOADED = "uploaded"
    QUEUED_FOR_PROCESSING = "queued_for_processing"
    PROCESSING = "processing"
    ACTIVE = "active"
    ARCHIVED = "archived"
    FAILED = "failed"


# 合法的状态迁移，只能前进不能回退
STATUS_TRANSITIONS: Dict[FileStatus, frozenset] = {
    FileStatus.PENDING: frozenset({FileStatus.UPLOADED, FileStatus.FAILED}),
    FileStatus.UPLOADED: frozenset(
        {FileStatus.QUEUED_FOR_PROCESSING, FileStatus.ACTIVE, FileStatus.FAILED}
    ),
    FileStatus.QUEUED_FOR_PROCESSING: frozenset(
        {FileStatus.PROCESSING, FileStatus.ACTIVE, FileStatus.FAILED}
    ),
    FileStatus.PROCESSING: frozenset({FileStatus.ACTIVE, FileStatus.FAILED}),
    FileStatus.ACTIVE: frozenset({FileStatus.ARCHIVED}),
    FileStatus.ARCHIVED: frozenset(),
    FileStatus.FAILED: frozenset(),
}

# 对外可见（已成功上传）的状态
VISIBLE_STATUSES = (
    FileStatus.UPLOADED,
    FileStatus.QUEUED_FOR_PROCESSING,
    FileStatus.PROCESSING,
    FileStatus.ACTIVE,
)


class FileCategory(str, Enum):
    """
    文件分类枚举
    """

    MEASUREMENT = "measurement"
    DESIGN = "design"
    FABRIC = "fabric"
    REFERENCE = "reference"
    FITTING = "fitting"
    PRODUCT = "product"
    INVOICE = "invoice"
    PROFILE = "profile"


class FileVersion(BaseSchema):
    """
    文件的派生版本（缩略图等）
    """

    type: str
    path: str
    size: int


class ProcessingEvent(BaseSchema):
    """
    处理历史记录项
    """

    timestamp: str
    action: str
    status: str
    error: Optional[str] = None


class UploadMetadata(BaseSchema):
    """
    上传时客户端提供的文件信息
    """

    category: FileCategory = FileCategory.REFERENCE
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    order_id: Optional[UUID] = None
    encrypt: bool = False


class SingleUploadRequest(UploadMetadata):
    """
    单次上传的文件信息
    """

    original_name: str
    mime_type: str


class ChunkedUploadInit(UploadMetadata):
    """
    初始化分片上传
    """

    original_name: str = Field(..., min_length=1, max_length=255)
    mime_type: str
    total_size: int = Field(..., gt=0)
    total_chunks: int = Field(..., ge=1)


class ChunkUploadResult(BaseSchema):
    """
    分片上传结果
    """

    complete: bool
    chunks_received: int
    total_chunks: int


class DownloadUrlResponse(BaseSchema):
    """
    下载链接
    """

    url: str
    expires_at: datetime


class StorageQuotaResponse(BaseSchema):
    """
    存储配额使用情况
    """

    used: int
    total: int
    percentage: float


class FileResponse(BaseModelSchema):
    """
    API 返回的文件信息（不包含加密密钥ID）
    """

    original_name: str
    mime_type: str
    size: int
    path: Optional[str] = None
    category: FileCategory
    status: FileStatus
    is_encrypted: bool = False
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("file_metadata", "metadata"),
    )
    thumbnail_path: Optional[str] = None
    versions: List[FileVersion] = Field(default_factory=list)
    processing_history: List[ProcessingEvent] = Field(default_factory=list)
    owner_id: UUID
    order_id: Optional[UUID] = None


class FileListResponse(BaseSchema):
    """
    分页文件列表
    """

    items: List[FileResponse]
    total: int
    page: int
    limit: int
