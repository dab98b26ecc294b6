import asyncio
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import Optional

from loguru import logger

from fileflow.core.exceptions import StorageIOException
from fileflow.core.security import LOCAL_DOWNLOAD_SCOPE, create_signed_token
from fileflow.plugins.storage.base import StorageOptions, StorageProvider


class LocalStorageProvider(StorageProvider):
    """
    本地文件系统存储

    签名链接是带有效期的JWT，由 /files/local/{token} 路由校验后返回内容。
    """

    def __init__(self, root_dir: str, download_url_prefix: str):
        self.root_dir = Path(root_dir).resolve()
        self.download_url_prefix = download_url_prefix.rstrip("/")
        os.makedirs(self.root_dir, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        """
        把相对存储路径映射到根目录下，拒绝绝对路径和 ".."
        """
        relative = PurePosixPath(path)
        if not path or relative.is_absolute() or ".." in relative.parts:
            raise StorageIOException(detail=f"非法的存储路径: {path}")
        return self.root_dir.joinpath(*relative.parts)

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        # 先写临时文件再原子替换，避免读到写了一半的对象
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as buffer:
                buffer.write(data)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    @staticmethod
    def _move(source: Path, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        os.replace(source, destination)

    async def upload_file(
        self, data: bytes, path: str, options: Optional[StorageOptions] = None
    ) -> str:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as e:
            logger.error(f"本地存储写入失败: {path}, 错误: {str(e)}")
            raise StorageIOException(detail=f"文件写入失败: {path}")
        logger.debug(f"本地存储写入成功: {path} ({len(data)} bytes)")
        return path

    async def download_file(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError:
            raise StorageIOException(detail=f"文件不存在: {path}")
        except OSError as e:
            logger.error(f"本地存储读取失败: {path}, 错误: {str(e)}")
            raise StorageIOException(detail=f"文件读取失败: {path}")

    async def move_file(self, source_path: str, destination_path: str) -> None:
        source = self._resolve(source_path)
        destination = self._resolve(destination_path)
        try:
            await asyncio.to_thread(self._move, source, destination)
        except OSError as e:
            logger.error(
                f"本地存储移动失败: {source_path} -> {destination_path}, 错误: {str(e)}"
            )
            raise StorageIOException(detail=f"文件移动失败: {source_path}")

    async def delete_file(self, path: str) -> None:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(target.unlink, missing_ok=True)
        except OSError as e:
            logger.error(f"本地存储删除失败: {path}, 错误: {str(e)}")
            raise StorageIOException(detail=f"文件删除失败: {path}")

    async def file_exists(self, path: str) -> bool:
        target = self._resolve(path)
        return await asyncio.to_thread(target.is_file)

    async def get_signed_url(self, path: str, expires_in: int) -> str:
        self._resolve(path)
        token = create_signed_token(LOCAL_DOWNLOAD_SCOPE, {"path": path}, expires_in)
        return f"{self.download_url_prefix}/{token}"
