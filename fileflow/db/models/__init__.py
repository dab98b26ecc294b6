from fileflow.db.models.base import Base
from fileflow.db.models.file import File
from fileflow.db.models.file_chunk import FileChunk
from fileflow.db.models.storage_quota import StorageQuota

__all__ = ["Base", "File", "FileChunk", "StorageQuota"]
