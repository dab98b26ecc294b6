import asyncio
import functools
from typing import NamedTuple, Optional

from celery import Task
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from fileflow.core.config import settings
from fileflow.plugins.storage.base import StorageProvider
from fileflow.plugins.storage.manager import build_storage_provider
from fileflow.services.encryption_service import (EncryptionService,
                                                  build_encryption_service)
from fileflow.tasks.celery import celery_app

# 每个任务都在新的事件循环中运行，不复用连接
async_engine = create_async_engine(settings.SQLALCHEMY_DATABASE_URI, poolclass=NullPool)
AsyncSessionLocal = async_sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


class WorkerResources(NamedTuple):
    storage: StorageProvider
    encryption: EncryptionService


class BaseTask(Task):
    """基础任务类，提供公共功能"""

    abstract = True  # 抽象类，不会被注册为任务

    # worker 进程内首次使用时创建，之后复用
    _resources: Optional[WorkerResources] = None

    @property
    def resources(self) -> WorkerResources:
        if BaseTask._resources is None:
            BaseTask._resources = WorkerResources(
                storage=build_storage_provider(settings),
                encryption=build_encryption_service(settings),
            )
        return BaseTask._resources

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """任务失败处理"""
        logger.error(
            f"任务失败: {self.name}[{task_id}], 异常: {exc}, 参数: {args}, {kwargs}"
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):
        """任务成功处理"""
        logger.info(f"任务成功: {self.name}[{task_id}], 结果: {retval}")
        super().on_success(retval, task_id, args, kwargs)

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        """任务重试处理"""
        logger.warning(
            f"任务重试: {self.name}[{task_id}], 异常: {exc}, 参数: {args}, {kwargs}"
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)


def async_task(
    *celery_args,
    name=None,
    queue=None,
    retry_backoff=True,
    max_retries=3,
    **celery_kwargs,
):
    """异步任务装饰器，支持异步函数"""

    def decorator(async_func):
        @functools.wraps(async_func)
        def sync_wrapper(*args, **kwargs):
            return asyncio.run(async_func(*args, **kwargs))

        task_options = {
            "base": BaseTask,
            "bind": True,
            "autoretry_for": (Exception,),
            "retry_backoff": retry_backoff,
            "retry_kwargs": {"max_retries": max_retries},
        }
        if queue:
            task_options["queue"] = queue
        if name:
            task_options["name"] = name
        task_options.update(celery_kwargs)

        return celery_app.task(*celery_args, **task_options)(sync_wrapper)

    return decorator


async def get_async_db_session():
    """获取异步数据库会话"""
    async with AsyncSessionLocal() as session:
        yield session
