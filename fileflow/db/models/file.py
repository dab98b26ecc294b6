from typing import Optional

from sqlalchemy import (TIMESTAMP, BigInteger, Boolean, CheckConstraint, Column,
                        Enum, Index, String, Uuid)

from fileflow.db.models.base import Base, JSONType
from fileflow.schemas.file import STATUS_TRANSITIONS, FileCategory, FileStatus
from fileflow.utils.datetime import now_iso


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class File(Base):
    """
    用户上传的文件（一个逻辑资产）
    """

    __table_args__ = (
        Index("ix_file_owner_id", "owner_id"),
        Index("ix_file_order_id", "order_id"),
        Index("ix_file_category", "category"),
        Index("ix_file_status", "status"),
        # 加密标记与密钥ID必须同时存在或同时为空
        CheckConstraint(
            "(is_encrypted AND encryption_key_id IS NOT NULL) OR "
            "(NOT is_encrypted AND encryption_key_id IS NULL)",
            name="ck_file_encryption_key",
        ),
    )

    original_name = Column(String(255), nullable=False)
    mime_type = Column(String(255), nullable=False)
    size = Column(BigInteger, nullable=False, default=0)  # 文件大小 (bytes)
    path = Column(String(1024), nullable=True)  # 存储路径，上传成功后才有值
    category = Column(
        Enum(FileCategory, name="file_category", values_callable=_enum_values),
        nullable=False,
        default=FileCategory.REFERENCE,
    )
    status = Column(
        Enum(FileStatus, name="file_status", values_callable=_enum_values),
        nullable=False,
        default=FileStatus.PENDING,
    )
    is_encrypted = Column(Boolean, nullable=False, default=False)
    encryption_key_id = Column(String(64), nullable=True)

    # 派生产物结果和错误标记
    file_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    thumbnail_path = Column(String(1024), nullable=True)
    versions = Column(JSONType, nullable=False, default=list)
    processing_history = Column(JSONType, nullable=False, default=list)

    # 身份和订单由外部服务管理，这里只保存引用
    owner_id = Column(Uuid(as_uuid=True), nullable=False)
    order_id = Column(Uuid(as_uuid=True), nullable=True)

    # 是否已计入存储配额（只有成功写入后才计入）
    quota_charged = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(TIMESTAMP(timezone=True), nullable=True)
    # 分片合并开始时间，非空表示已有完成请求在合并
    completing_at = Column(TIMESTAMP(timezone=True), nullable=True)

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == "application/pdf"

    @property
    def storage_prefix(self) -> str:
        """
        该文件及其派生产物的存储目录
        """
        category = FileCategory(self.category).value
        return f"{category}/{self.id}"

    def can_transition_to(self, status: FileStatus) -> bool:
        return status in STATUS_TRANSITIONS[FileStatus(self.status)]

    def add_history_event(
        self, action: str, status: str, error: Optional[str] = None
    ) -> None:
        """
        追加处理历史（重新赋值以便 JSON 列检测到变更）
        """
        event = {"timestamp": now_iso(), "action": action, "status": status}
        if error:
            event["error"] = error
        self.processing_history = [*(self.processing_history or []), event]

    def update_metadata(self, **values) -> None:
        self.file_metadata = {**(self.file_metadata or {}), **values}
