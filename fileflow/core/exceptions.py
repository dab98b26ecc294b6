from fastapi import HTTPException, status


class CredentialsException(HTTPException):
    """认证失败异常"""

    error_code = "unauthenticated"

    def __init__(self, detail: str = "认证凭证无效"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationException(HTTPException):
    """无权访问该文件"""

    error_code = "forbidden"

    def __init__(self, detail: str = "没有足够的权限执行此操作"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class NotFoundException(HTTPException):
    """资源不存在异常"""

    error_code = "not_found"

    def __init__(self, detail: str = "请求的资源不存在"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class BadRequestException(HTTPException):
    """请求参数异常"""

    error_code = "bad_request"

    def __init__(self, detail: str = "请求参数有误"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class InvalidFileTypeException(BadRequestException):
    """无效文件类型异常"""

    error_code = "invalid_file_type"

    def __init__(self, detail: str = "不支持的文件类型"):
        super().__init__(detail=detail)


class FileTooLargeException(BadRequestException):
    """文件过大异常"""

    error_code = "file_too_large"

    def __init__(self, detail: str = "文件大小超过限制"):
        super().__init__(detail=detail)


class QuotaExceededException(HTTPException):
    """存储配额不足，准入阶段拒绝，不会产生任何写入"""

    error_code = "quota_exceeded"

    def __init__(self, detail: str = "存储配额已用尽"):
        super().__init__(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=detail
        )


class IncompleteUploadException(HTTPException):
    """分片未全部到达时尝试合并"""

    error_code = "incomplete_upload"

    def __init__(self, detail: str = "分片上传尚未完成"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class StorageIOException(HTTPException):
    """存储后端读写失败"""

    error_code = "storage_io"

    def __init__(self, detail: str = "存储服务读写失败"):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


class DecryptionException(HTTPException):
    """解密失败（密钥错误或已轮换），绝不返回损坏的数据"""

    error_code = "decryption_failed"

    def __init__(self, detail: str = "文件解密失败"):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail
        )


class ProcessingException(HTTPException):
    """派生产物处理异常，不影响文件本身的可用性"""

    error_code = "processing_failed"

    def __init__(self, detail: str = "文件处理过程中出现错误"):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail
        )
