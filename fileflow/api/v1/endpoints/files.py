import mimetypes
from typing import Any, Optional
from uuid import UUID

from fastapi import (APIRouter, Depends, File, Form, Query, Response, UploadFile,
                     status)

from fileflow.api.dependencies import (get_current_user_id, get_storage_provider,
                                       get_upload_service)
from fileflow.core.exceptions import CredentialsException
from fileflow.core.security import (DECRYPTED_DOWNLOAD_SCOPE, LOCAL_DOWNLOAD_SCOPE,
                                    decode_signed_token)
from fileflow.plugins.storage.base import StorageProvider
from fileflow.schemas.file import (ChunkedUploadInit, ChunkUploadResult,
                                   DownloadUrlResponse, FileCategory,
                                   FileListResponse, FileResponse,
                                   SingleUploadRequest, StorageQuotaResponse)
from fileflow.services.upload_service import UploadService
from fileflow.utils.string import safe_filename

router = APIRouter()


def _parse_tags(tags: Optional[str]) -> list:
    if not tags:
        return []
    return [tag.strip() for tag in tags.split(",") if tag.strip()]


@router.post("/upload", response_model=FileResponse, status_code=status.HTTP_201_CREATED)
async def upload_file(
    file: UploadFile = File(...),
    category: FileCategory = Form(FileCategory.REFERENCE),
    description: Optional[str] = Form(None),
    tags: Optional[str] = Form(None, description="逗号分隔的标签"),
    order_id: Optional[UUID] = Form(None),
    encrypt: bool = Form(False),
    current_user_id: UUID = Depends(get_current_user_id),
    upload_service: UploadService = Depends(get_upload_service),
) -> Any:
    """
    单次上传文件
    """
    content = await file.read()
    request = SingleUploadRequest(
        original_name=file.filename or "file",
        mime_type=file.content_type or "application/octet-stream",
        category=category,
        description=description,
        tags=_parse_tags(tags),
        order_id=order_id,
        encrypt=encrypt,
    )
    file_record = await upload_service.upload_file(content, request, current_user_id)
    return FileResponse.model_validate(file_record)


@router.post("/chunked", response_model=FileResponse, status_code=status.HTTP_201_CREATED)
async def initiate_chunked_upload(
    request: ChunkedUploadInit,
    current_user_id: UUID = Depends(get_current_user_id),
    upload_service: UploadService = Depends(get_upload_service),
) -> Any:
    """
    初始化分片上传，返回的文件ID用于上传分片
    """
    file_record = await upload_service.initiate_chunked_upload(request, current_user_id)
    return FileResponse.model_validate(file_record)


@router.get("/quota", response_model=StorageQuotaResponse)
async def get_quota(
    current_user_id: UUID = Depends(get_current_user_id),
    upload_service: UploadService = Depends(get_upload_service),
) -> Any:
    """
    获取当前用户的存储配额
    """
    return await upload_service.get_quota(current_user_id)


@router.get("/local/{token}")
async def download_local_file(
    token: str,
    storage: StorageProvider = Depends(get_storage_provider),
) -> Response:
    """
    本地存储的签名下载链接
    """
    payload = decode_signed_token(token, LOCAL_DOWNLOAD_SCOPE)
    path = payload.get("path")
    if not path:
        raise CredentialsException(detail="下载链接无效或已过期")

    content = await storage.download_file(path)
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return Response(content=content, media_type=media_type)


@router.get("/decrypted/{token}")
async def download_decrypted_file(
    token: str,
    upload_service: UploadService = Depends(get_upload_service),
) -> Response:
    """
    加密文件的签名下载链接，返回解密后的内容
    """
    payload = decode_signed_token(token, DECRYPTED_DOWNLOAD_SCOPE)
    try:
        file_id = UUID(str(payload.get("file_id")))
    except ValueError:
        raise CredentialsException(detail="下载链接无效或已过期")

    file_record, content = await upload_service.open_decrypted(file_id)
    filename = safe_filename(file_record.original_name)
    return Response(
        content=content,
        media_type=file_record.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("", response_model=FileListResponse)
async def list_files(
    category: Optional[FileCategory] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user_id: UUID = Depends(get_current_user_id),
    upload_service: UploadService = Depends(get_upload_service),
) -> Any:
    """
    获取当前用户的文件列表
    """
    items, total = await upload_service.list_files(
        current_user_id, category=category, page=page, limit=limit
    )
    return FileListResponse(
        items=[FileResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.put("/{file_id}/chunks/{chunk_number}", response_model=ChunkUploadResult)
async def upload_chunk(
    file_id: UUID,
    chunk_number: int,
    total_chunks: int = Query(..., ge=1),
    chunk: UploadFile = File(...),
    current_user_id: UUID = Depends(get_current_user_id),
    upload_service: UploadService = Depends(get_upload_service),
) -> Any:
    """
    上传一个分片，可以乱序或重复上传
    """
    data = await chunk.read()
    return await upload_service.accept_chunk(
        file_id, chunk_number, total_chunks, data, current_user_id
    )


@router.post("/{file_id}/complete", response_model=FileResponse)
async def complete_chunked_upload(
    file_id: UUID,
    current_user_id: UUID = Depends(get_current_user_id),
    upload_service: UploadService = Depends(get_upload_service),
) -> Any:
    """
    合并分片，完成上传
    """
    file_record = await upload_service.complete_chunked_upload(file_id, current_user_id)
    return FileResponse.model_validate(file_record)


@router.get("/{file_id}/download-url", response_model=DownloadUrlResponse)
async def get_download_url(
    file_id: UUID,
    current_user_id: UUID = Depends(get_current_user_id),
    upload_service: UploadService = Depends(get_upload_service),
) -> Any:
    """
    获取限时下载链接
    """
    return await upload_service.get_download_url(file_id, current_user_id)


@router.get("/{file_id}", response_model=FileResponse)
async def get_file(
    file_id: UUID,
    current_user_id: UUID = Depends(get_current_user_id),
    upload_service: UploadService = Depends(get_upload_service),
) -> Any:
    """
    获取文件信息（用于轮询处理状态）
    """
    file_record = await upload_service.get_file(file_id, current_user_id)
    return FileResponse.model_validate(file_record)


@router.delete("/{file_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_file(
    file_id: UUID,
    current_user_id: UUID = Depends(get_current_user_id),
    upload_service: UploadService = Depends(get_upload_service),
) -> Response:
    """
    删除文件及其所有派生产物
    """
    await upload_service.delete_file(file_id, current_user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
