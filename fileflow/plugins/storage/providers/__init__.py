from fileflow.plugins.storage.providers.local import LocalStorageProvider
from fileflow.plugins.storage.providers.s3 import S3StorageProvider

__all__ = ["LocalStorageProvider", "S3StorageProvider"]
