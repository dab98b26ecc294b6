import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from fileflow.api.api import api_router
from fileflow.api.exceptions import setup_exception_handlers
from fileflow.api.middlewares import RequestLoggingMiddleware
from fileflow.core.config import settings
from fileflow.core.logging import setup_logging
from fileflow.core.resources import AppResources, build_app_resources
from fileflow.db.session import engine
from fileflow.monitoring.metrics import setup_metrics


def create_app(resources: Optional[AppResources] = None) -> FastAPI:
    """
    创建FastAPI应用

    参数:
        resources: 存储、加密、任务队列等进程级依赖，为空时按配置创建
    """
    resources = resources or build_app_resources(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """启动时准备本地存储目录，关闭时释放数据库连接池"""
        if settings.STORAGE_PROVIDER == "local":
            os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
        logger.info(
            f"{settings.PROJECT_NAME} 启动, 存储: {settings.STORAGE_PROVIDER}, "
            f"任务队列: {type(resources.job_queue).__name__}"
        )
        yield
        await engine.dispose()
        logger.info("应用已关闭，数据库连接池已释放")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description=settings.DESCRIPTION,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        docs_url=f"{settings.API_V1_STR}/docs",
        redoc_url=f"{settings.API_V1_STR}/redoc",
        lifespan=lifespan,
    )

    # 进程级依赖只在这里注入，路由通过 request.app.state 获取
    app.state.storage_provider = resources.storage_provider
    app.state.encryption_service = resources.encryption_service
    app.state.job_queue = resources.job_queue
    app.state.order_access = resources.order_access

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    setup_exception_handlers(app)
    setup_metrics(app)

    app.include_router(api_router, prefix=settings.API_V1_STR)

    @app.get("/")
    async def root():
        """根路径响应"""
        return {
            "message": f"欢迎使用 {settings.PROJECT_NAME} API",
            "docs": f"{settings.API_V1_STR}/docs",
            "version": settings.VERSION,
        }

    return app


if __name__ == "__main__":
    import uvicorn

    setup_logging()
    uvicorn.run("fileflow.main:create_app", factory=True, host="0.0.0.0", port=8000)
