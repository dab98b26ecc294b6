from datetime import timedelta
from typing import Any, Dict, Optional, Union

from jose import JWTError, jwt

from fileflow.core.config import settings
from fileflow.core.exceptions import CredentialsException
from fileflow.utils.datetime import now_utc

# 签名下载链接使用的令牌用途
LOCAL_DOWNLOAD_SCOPE = "local-download"
DECRYPTED_DOWNLOAD_SCOPE = "decrypted-download"


def create_access_token(
    subject: Union[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    生成访问令牌

    正式环境由认证服务签发，这里主要用于本地调试和测试。
    """
    expire = now_utc() + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {"exp": expire, "sub": str(subject)}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    解析访问令牌
    """
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise CredentialsException()


def create_signed_token(scope: str, claims: Dict[str, Any], expires_in: int) -> str:
    """
    生成带用途和过期时间的签名令牌

    参数:
        scope: 令牌用途
        claims: 附加声明
        expires_in: 有效期（秒）
    """
    payload = dict(claims)
    payload["scope"] = scope
    payload["exp"] = now_utc() + timedelta(seconds=expires_in)
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_signed_token(token: str, scope: str) -> Dict[str, Any]:
    """
    校验签名令牌，过期、篡改或用途不符都视为凭证无效
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise CredentialsException(detail="下载链接无效或已过期")
    if payload.get("scope") != scope:
        raise CredentialsException(detail="下载链接无效或已过期")
    return payload
