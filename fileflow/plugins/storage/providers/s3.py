import asyncio
from typing import Any, Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from fileflow.core.exceptions import StorageIOException
from fileflow.plugins.storage.base import StorageOptions, StorageProvider

# head_object 对不存在的键返回的错误码
_MISSING_KEY_CODES = {"404", "NoSuchKey", "NotFound"}


class S3StorageProvider(StorageProvider):
    """
    S3 兼容对象存储（AWS S3、MinIO、R2 等）

    boto3 是同步客户端，所有调用都放到线程中执行。
    """

    def __init__(
        self,
        bucket: str,
        client: Any = None,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
    ):
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            region_name=region_name,
            endpoint_url=endpoint_url,
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
        )

    async def _call(self, func: Callable, action: str, key: str, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(func, **kwargs)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 {action}失败: {self.bucket}/{key}, 错误: {str(e)}")
            raise StorageIOException(detail=f"对象存储{action}失败: {key}")

    async def upload_file(
        self, data: bytes, path: str, options: Optional[StorageOptions] = None
    ) -> str:
        options = options or StorageOptions()
        params = {"Bucket": self.bucket, "Key": path, "Body": data}
        if options.content_type:
            params["ContentType"] = options.content_type
        if options.metadata:
            params["Metadata"] = options.metadata

        await self._call(self.client.put_object, "写入", path, **params)
        logger.debug(f"S3写入成功: {self.bucket}/{path} ({len(data)} bytes)")
        return path

    async def download_file(self, path: str) -> bytes:
        def _read() -> bytes:
            response = self.client.get_object(Bucket=self.bucket, Key=path)
            return response["Body"].read()

        return await self._call(_read, "读取", path)

    async def move_file(self, source_path: str, destination_path: str) -> None:
        # S3 没有移动操作，复制后删除源对象
        await self._call(
            self.client.copy_object,
            "复制",
            source_path,
            Bucket=self.bucket,
            Key=destination_path,
            CopySource={"Bucket": self.bucket, "Key": source_path},
        )
        await self.delete_file(source_path)

    async def delete_file(self, path: str) -> None:
        await self._call(
            self.client.delete_object, "删除", path, Bucket=self.bucket, Key=path
        )

    async def file_exists(self, path: str) -> bool:
        try:
            await asyncio.to_thread(
                self.client.head_object, Bucket=self.bucket, Key=path
            )
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_KEY_CODES:
                return False
            logger.error(f"S3 查询对象失败: {self.bucket}/{path}, 错误: {str(e)}")
            raise StorageIOException(detail=f"对象存储查询失败: {path}")
        except BotoCoreError as e:
            logger.error(f"S3 查询对象失败: {self.bucket}/{path}, 错误: {str(e)}")
            raise StorageIOException(detail=f"对象存储查询失败: {path}")

    async def get_signed_url(self, path: str, expires_in: int) -> str:
        return await self._call(
            self.client.generate_presigned_url,
            "签名",
            path,
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": path},
            ExpiresIn=expires_in,
        )
