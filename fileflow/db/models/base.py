import uuid
from typing import Any, Dict

from sqlalchemy import JSON, TIMESTAMP, Column, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import as_declarative, declared_attr

# Postgres 使用 JSONB，其他数据库（如测试用的 SQLite）退化为 JSON
JSONType = JSON().with_variant(JSONB(), "postgresql")


@as_declarative()
class Base:
    """
    SQLAlchemy 模型的基类
    """

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(
        TIMESTAMP(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __name__: str

    # 根据类名生成表名
    @declared_attr
    def __tablename__(cls) -> str:
        return cls.__name__.lower()

    def dict(self) -> Dict[str, Any]:
        """
        将模型转换为字典
        """
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}
