from fastapi import APIRouter

from fileflow.api.v1.endpoints import files, health

api_router = APIRouter()

# 注册各个路由
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(files.router, prefix="/files", tags=["files"])
