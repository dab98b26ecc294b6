from loguru import logger

from fileflow.core.config import Settings
from fileflow.plugins.storage.base import StorageProvider
from fileflow.plugins.storage.providers import LocalStorageProvider, S3StorageProvider


def build_storage_provider(config: Settings) -> StorageProvider:
    """
    根据配置创建存储实现

    每个进程启动时调用一次，结果通过依赖注入传给各个服务。
    """
    provider = config.STORAGE_PROVIDER.lower()

    if provider == "local":
        logger.info(f"使用本地存储: {config.UPLOAD_DIR}")
        base_url = config.STORAGE_PUBLIC_BASE_URL.rstrip("/")
        return LocalStorageProvider(
            root_dir=config.UPLOAD_DIR,
            download_url_prefix=f"{base_url}{config.API_V1_STR}/files/local",
        )

    if provider == "s3":
        if not config.AWS_S3_BUCKET:
            raise ValueError("使用S3存储时必须配置 AWS_S3_BUCKET")
        logger.info(f"使用S3存储: {config.AWS_S3_BUCKET}")
        return S3StorageProvider(
            bucket=config.AWS_S3_BUCKET,
            region_name=config.AWS_REGION,
            endpoint_url=config.AWS_S3_ENDPOINT_URL,
            aws_access_key_id=config.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=config.AWS_SECRET_ACCESS_KEY,
        )

    raise ValueError(f"不支持的存储类型: {config.STORAGE_PROVIDER}")
