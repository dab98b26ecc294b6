from typing import AsyncGenerator, Optional
from uuid import UUID

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from fileflow.core.config import settings
from fileflow.core.exceptions import CredentialsException
from fileflow.core.security import decode_access_token
from fileflow.db.session import get_db
from fileflow.plugins.storage.base import StorageProvider
from fileflow.schemas.token import TokenPayload
from fileflow.services.processing_dispatcher import ProcessingDispatcher
from fileflow.services.upload_service import UploadService

bearer_scheme = HTTPBearer(auto_error=False)


# 依赖项: 获取数据库会话
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async with get_db() as session:
        yield session


# 依赖项: 从令牌中获取当前用户ID（身份由外部认证服务管理）
async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> UUID:
    if credentials is None:
        raise CredentialsException(detail="缺少认证凭据")

    payload = decode_access_token(credentials.credentials)
    try:
        token_data = TokenPayload(**payload)
    except ValidationError:
        raise CredentialsException()
    if token_data.sub is None:
        raise CredentialsException()
    return token_data.sub


def get_storage_provider(request: Request) -> StorageProvider:
    return request.app.state.storage_provider


# 服务依赖项
async def get_upload_service(
    request: Request,
    db_session: AsyncSession = Depends(get_db_session),
) -> UploadService:
    state = request.app.state
    dispatcher = ProcessingDispatcher(state.job_queue, settings.THUMBNAIL_SIZES)
    return UploadService(
        db_session,
        storage=state.storage_provider,
        encryption=state.encryption_service,
        dispatcher=dispatcher,
        order_access=state.order_access,
    )
