from abc import ABC, abstractmethod
from typing import Dict, Optional

from pydantic import BaseModel, Field


class StorageOptions(BaseModel):
    """
    写入对象时的附加选项
    """

    content_type: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class StorageProvider(ABC):
    """
    二进制对象存储接口

    路径均为相对路径（例如 "design/<id>/cover.png"），由具体实现映射到
    本地目录或对象存储的键。实现中的任何后端错误都应包装为
    StorageIOException 抛出。
    """

    @abstractmethod
    async def upload_file(
        self, data: bytes, path: str, options: Optional[StorageOptions] = None
    ) -> str:
        """写入对象，返回实际存储路径"""
        pass

    @abstractmethod
    async def download_file(self, path: str) -> bytes:
        """读取对象内容"""
        pass

    @abstractmethod
    async def move_file(self, source_path: str, destination_path: str) -> None:
        """移动对象"""
        pass

    @abstractmethod
    async def delete_file(self, path: str) -> None:
        """删除对象，对象不存在时不报错"""
        pass

    @abstractmethod
    async def file_exists(self, path: str) -> bool:
        """检查对象是否存在"""
        pass

    @abstractmethod
    async def get_signed_url(self, path: str, expires_in: int) -> str:
        """生成有效期为 expires_in 秒的下载链接"""
        pass
