import os
import secrets
from abc import ABC, abstractmethod
from typing import NamedTuple, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from loguru import logger

from fileflow.core.config import Settings
from fileflow.core.exceptions import DecryptionException


class EncryptedPayload(NamedTuple):
    encrypted_data: bytes
    key_id: str


class KeyStore(ABC):
    """
    密钥存储接口，业务代码只接触不透明的 key_id
    """

    @abstractmethod
    def new_key_id(self) -> str:
        pass

    @abstractmethod
    def get_key(self, key_id: str) -> bytes:
        """返回 key_id 对应的256位密钥"""
        pass


class DerivedKeyStore(KeyStore):
    """
    由主密钥和 key_id 通过 HKDF-SHA256 派生每个文件的密钥
    """

    def __init__(self, master_key: Union[str, bytes]):
        if isinstance(master_key, str):
            master_key = master_key.encode("utf-8")
        if not master_key:
            raise ValueError("主密钥不能为空")
        self._master_key = master_key

    def new_key_id(self) -> str:
        return secrets.token_hex(16)

    def get_key(self, key_id: str) -> bytes:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=f"fileflow:file:{key_id}".encode("utf-8"),
        )
        return hkdf.derive(self._master_key)


class EncryptionService:
    """
    文件内容加密服务（AES-256-GCM）

    输出格式: nonce(12字节) || 密文 || tag(16字节)
    """

    NONCE_SIZE = 12
    TAG_SIZE = 16

    def __init__(self, key_store: KeyStore):
        self.key_store = key_store

    def encrypt_file(self, data: bytes, key_id: Optional[str] = None) -> EncryptedPayload:
        """
        加密文件内容

        参数:
            data: 明文
            key_id: 指定密钥ID，为空时生成新的

        返回:
            密文和密钥ID
        """
        key_id = key_id or self.key_store.new_key_id()
        nonce = os.urandom(self.NONCE_SIZE)
        ciphertext = AESGCM(self.key_store.get_key(key_id)).encrypt(nonce, data, None)
        return EncryptedPayload(nonce + ciphertext, key_id)

    def decrypt_file(self, data: bytes, key_id: str) -> bytes:
        """
        解密文件内容，密钥错误或数据被篡改时抛出 DecryptionException
        """
        if len(data) < self.NONCE_SIZE + self.TAG_SIZE:
            raise DecryptionException(detail="密文长度不合法")

        nonce, ciphertext = data[: self.NONCE_SIZE], data[self.NONCE_SIZE :]
        try:
            return AESGCM(self.key_store.get_key(key_id)).decrypt(nonce, ciphertext, None)
        except InvalidTag:
            logger.warning(f"文件解密失败，密钥ID: {key_id}")
            raise DecryptionException()

    def rotate_key(self, data: bytes, old_key_id: str) -> EncryptedPayload:
        """
        用新密钥重新加密
        """
        plaintext = self.decrypt_file(data, old_key_id)
        return self.encrypt_file(plaintext)


def build_encryption_service(config: Settings) -> EncryptionService:
    master_key = config.ENCRYPTION_MASTER_KEY
    if not master_key:
        if config.ENVIRONMENT == "production":
            raise ValueError("生产环境必须配置 ENCRYPTION_MASTER_KEY")
        logger.warning("未配置 ENCRYPTION_MASTER_KEY，使用 SECRET_KEY 派生加密密钥")
        master_key = config.SECRET_KEY
    return EncryptionService(DerivedKeyStore(master_key))
