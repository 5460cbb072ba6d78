"""
Modrinth 目录客户端

基于 aiohttp 的 CatalogClient 实现，只读取解析逻辑需要的字段。
"""

import asyncio
from typing import AsyncIterator, Dict, Optional

import aiohttp
from loguru import logger

from modkeeper.api.base import CatalogClient
from modkeeper.exceptions import TransportError, VersionGoneError
from modkeeper.models import (
    Channel,
    Dependency,
    DependencyType,
    Project,
    ResourceKind,
    VersionRecord,
)
from modkeeper.models.api import parse_time
from modkeeper.models.config import DEFAULT_USER_AGENT, MODRINTH_BASE_URL


def _primary_file(version: dict) -> Optional[dict]:
    """获取主文件信息"""
    files = version.get("files", [])
    if not files:
        return None

    for file in files:
        if file.get("primary", False):
            return file

    return files[0]


def version_from_modrinth(data: dict, kind: ResourceKind) -> Optional[VersionRecord]:
    """
    将 Modrinth API 返回的版本信息转换为 VersionRecord。

    没有文件的版本无法安装，返回 None。
    """
    file = _primary_file(data)
    if file is None:
        return None

    dependencies = tuple(
        Dependency(
            project_id=dep["project_id"],
            version_id=dep.get("version_id"),
            dependency_type=DependencyType.parse(dep.get("dependency_type")),
        )
        for dep in data.get("dependencies", [])
        if dep.get("project_id")
    )

    return VersionRecord(
        project_id=data["project_id"],
        version_id=data["id"],
        name=data.get("version_number", ""),
        kind=kind,
        game_versions=tuple(data.get("game_versions", [])),
        loaders=tuple(data.get("loaders", [])),
        channel=Channel.parse(data.get("version_type")),
        content_hash=file.get("hashes", {}).get("sha1", ""),
        locator=file["url"],
        filename=file.get("filename", ""),
        published_at=parse_time(data.get("date_published")),
        dependencies=dependencies,
    )


class ModrinthCatalog(CatalogClient):
    """Modrinth API 客户端"""

    def __init__(
        self,
        base_url: str = MODRINTH_BASE_URL,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.timeout = timeout
        self._session = session
        self._owned_session = session is None
        self._projects: Dict[str, Project] = {}

    @property
    def session(self) -> aiohttp.ClientSession:
        """获取或创建 aiohttp session"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": self.user_agent},
                timeout=aiohttp.ClientTimeout(
                    total=None, sock_connect=self.timeout, sock_read=self.timeout
                ),
            )
        return self._session

    @staticmethod
    def _check_status(response: aiohttp.ClientResponse):
        """把 HTTP 状态码映射为 TransportError"""
        if response.status == 200:
            return
        context = {"status_code": response.status, "url": str(response.url)}
        if response.status in (404, 410):
            raise VersionGoneError(
                f"资源不存在 (状态码: {response.status})", context=context
            )
        transient = response.status == 429 or response.status >= 500
        raise TransportError(
            f"请求失败 (状态码: {response.status})",
            transient=transient,
            context=context,
        )

    async def _request(self, endpoint: str, params: Optional[dict] = None):
        """发送 API 请求"""
        url = f"{self.base_url}{endpoint}"
        try:
            async with self.session.get(url, params=params) as response:
                self._check_status(response)
                return await response.json()
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise TransportError(
                f"网络错误: {e!r}", transient=True, context={"url": url}
            ) from e
        except (aiohttp.ContentTypeError, ValueError) as e:
            raise TransportError(
                f"响应解析失败: {e}", transient=False, context={"url": url}
            ) from e

    async def get_project(self, project_id: str) -> Project:
        """获取项目信息（按项目缓存）"""
        if project_id in self._projects:
            return self._projects[project_id]

        data = await self._request(f"/project/{project_id}")
        project = Project(
            id=data["id"],
            name=data.get("title") or data.get("slug", project_id),
            kind=ResourceKind.parse(data.get("project_type", "mod")),
        )
        self._projects[project_id] = project
        self._projects[project.id] = project
        return project

    async def canonical_id(self, project_id: str) -> str:
        project = await self.get_project(project_id)
        return project.id

    async def list_versions(self, project_id: str) -> AsyncIterator[VersionRecord]:
        project = await self.get_project(project_id)
        versions = await self._request(f"/project/{project.id}/version")
        logger.debug(f"[目录] {project.name}: 获取到 {len(versions)} 个版本")

        for data in versions:
            record = version_from_modrinth(data, project.kind)
            if record is not None:
                yield record

    async def fetch_bytes(self, locator: str) -> AsyncIterator[bytes]:
        try:
            async with self.session.get(locator) as response:
                self._check_status(response)
                async for chunk in response.content.iter_chunked(8192):
                    yield chunk
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError) as e:
            raise TransportError(
                f"下载中断: {e!r}", transient=True, context={"url": locator}
            ) from e
        except asyncio.TimeoutError as e:
            raise TransportError(
                "下载超时", transient=True, context={"url": locator}
            ) from e

    async def close(self):
        """关闭客户端"""
        if self._owned_session and self._session and not self._session.closed:
            await self._session.close()
