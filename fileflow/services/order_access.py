from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional, Set
from uuid import UUID

import httpx
from loguru import logger

from fileflow.core.config import Settings


class OrderAccessResolver(ABC):
    """
    查询订单参与方（客户和裁缝），用于判断谁可以访问订单关联的文件
    """

    @abstractmethod
    async def get_participants(self, order_id: UUID) -> Set[UUID]:
        pass


class NoOrderAccessResolver(OrderAccessResolver):
    """未接入订单服务时，只有上传者本人可以访问"""

    async def get_participants(self, order_id: UUID) -> Set[UUID]:
        return set()


class StaticOrderAccessResolver(OrderAccessResolver):
    """固定的订单参与方映射"""

    def __init__(self, participants: Optional[Dict[UUID, Iterable[UUID]]] = None):
        self.participants = {
            order_id: set(members) for order_id, members in (participants or {}).items()
        }

    async def get_participants(self, order_id: UUID) -> Set[UUID]:
        return set(self.participants.get(order_id, set()))


class HttpOrderAccessResolver(OrderAccessResolver):
    """
    通过订单服务的HTTP接口查询参与方

    接口返回 {"client_id": ..., "tailor_id": ...}。查询失败时按无权限处理。
    """

    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def get_participants(self, order_id: UUID) -> Set[UUID]:
        url = f"{self.base_url}/orders/{order_id}"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.get(url)
                if response.status_code == 404:
                    return set()
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"查询订单参与方失败: {order_id}, 错误: {str(e)}")
                return set()

        participants = set()
        for field in ("client_id", "tailor_id"):
            if data.get(field):
                participants.add(UUID(str(data[field])))
        return participants


def build_order_access_resolver(config: Settings) -> OrderAccessResolver:
    if config.ORDERS_SERVICE_URL:
        return HttpOrderAccessResolver(config.ORDERS_SERVICE_URL)
    return NoOrderAccessResolver()
