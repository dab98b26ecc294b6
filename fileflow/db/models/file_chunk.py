from sqlalchemy import (TIMESTAMP, BigInteger, Column, ForeignKey, Integer, String,
                        UniqueConstraint, Uuid)

from fileflow.db.models.base import Base


class FileChunk(Base):
    """
    分片上传过程中的临时分片，合并成功后删除
    """

    __table_args__ = (
        UniqueConstraint("file_id", "chunk_number", name="uq_filechunk_file_chunk"),
    )

    file_id = Column(
        Uuid(as_uuid=True), ForeignKey("file.id"), nullable=False, index=True
    )
    chunk_number = Column(Integer, nullable=False)  # 从0开始
    size = Column(BigInteger, nullable=False)
    path = Column(String(1024), nullable=False)  # 临时存储路径

    # 过期未完成的分片由定时任务清理
    expires_at = Column(TIMESTAMP(timezone=True), nullable=True, index=True)
