from fileflow.core.exceptions import NotFoundException
from fileflow.db.models.file import File
from fileflow.plugins.storage.base import StorageProvider
from fileflow.services.encryption_service import EncryptionService


async def read_file_content(
    storage: StorageProvider, encryption: EncryptionService, file: File
) -> bytes:
    """
    读取文件明文内容，加密文件会先解密
    """
    if not file.path:
        raise NotFoundException(detail="文件尚未写入存储")

    data = await storage.download_file(file.path)
    if file.is_encrypted:
        return encryption.decrypt_file(data, file.encryption_key_id)
    return data
