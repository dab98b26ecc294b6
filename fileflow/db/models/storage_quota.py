from sqlalchemy import BigInteger, Column, Uuid

from fileflow.db.models.base import Base


class StorageQuota(Base):
    """
    每个用户一行的存储配额
    """

    owner_id = Column(Uuid(as_uuid=True), nullable=False, unique=True)
    total_space = Column(BigInteger, nullable=False)
    # 只通过原子增减修改
    used_space = Column(BigInteger, nullable=False, default=0)

    @property
    def percentage(self) -> float:
        if not self.total_space:
            return 100.0
        return round(self.used_space / self.total_space * 100, 2)
