from typing import NamedTuple

from fileflow.core.config import Settings
from fileflow.plugins.storage.base import StorageProvider
from fileflow.plugins.storage.manager import build_storage_provider
from fileflow.services.encryption_service import (EncryptionService,
                                                  build_encryption_service)
from fileflow.services.order_access import (OrderAccessResolver,
                                            build_order_access_resolver)
from fileflow.services.processing_dispatcher import CeleryJobQueue, JobQueue


class AppResources(NamedTuple):
    """
    进程级依赖，启动时创建一次并注入到请求处理中
    """

    storage_provider: StorageProvider
    encryption_service: EncryptionService
    job_queue: JobQueue
    order_access: OrderAccessResolver


def build_app_resources(config: Settings) -> AppResources:
    return AppResources(
        storage_provider=build_storage_provider(config),
        encryption_service=build_encryption_service(config),
        job_queue=CeleryJobQueue(),
        order_access=build_order_access_resolver(config),
    )
