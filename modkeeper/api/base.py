"""
目录客户端接口

核心逻辑只依赖此接口，具体的 HTTP 实现见 modkeeper.api.modrinth。
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator

from modkeeper.models import VersionRecord


class CatalogClient(ABC):
    """
    目录客户端抽象

    两个方法在网络或协议错误时都抛出 TransportError。
    """

    @abstractmethod
    def list_versions(self, project_id: str) -> AsyncIterator[VersionRecord]:
        """
        列出项目的所有版本。

        返回惰性、有限、不可重启的异步迭代器，每次调用只能遍历一次。
        """

    async def canonical_id(self, project_id: str) -> str:
        """
        把 slug 等别名映射为项目的规范 ID。

        依赖与 VersionRecord.project_id 总是使用规范 ID，
        计划、准入控制和缓存都以它为键。
        """
        return project_id

    @abstractmethod
    def fetch_bytes(self, locator: str) -> AsyncIterator[bytes]:
        """
        获取版本文件内容，以字节块的形式流式返回。
        """

    async def close(self):
        """关闭客户端"""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
