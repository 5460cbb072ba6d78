"""
版本解析服务

把 (项目, 目标环境, 通道偏好, 当前已安装版本) 映射为最佳远程版本。
解析器从不重试，传输层重试只在下载编排器中进行。
"""

from typing import Iterable, List, Optional, Union

from loguru import logger

from modkeeper.api.base import CatalogClient
from modkeeper.exceptions import TransportError
from modkeeper.models import (
    Channel,
    InstalledEntry,
    NoCompatibleVersion,
    ResolutionFailed,
    ResolutionResult,
    Resolved,
    Target,
    UpToDate,
    VersionRecord,
)

Installed = Union[InstalledEntry, VersionRecord, None]


def _installed_version(installed: Installed) -> Optional[VersionRecord]:
    if isinstance(installed, InstalledEntry):
        return installed.version
    return installed


def rank_key(version: VersionRecord, channel_preference: Channel):
    """
    排序键，越大越优先。

    通道等级低于等于偏好通道的版本处于同一档，其余按稳定性递减；
    同档内按发布时间，再按版本 ID 字典序。
    """
    tier = max(0, version.channel.rank - channel_preference.rank)
    return (-tier, version.published_at, version.version_id)


class VersionResolver:
    """版本解析器"""

    def __init__(self, client: CatalogClient):
        self.client = client

    async def canonical_id(self, project_id: str) -> str:
        """规范项目 ID，查询失败时沿用传入的 ID（随后的版本查询会报告失败）"""
        try:
            return await self.client.canonical_id(project_id)
        except TransportError as e:
            logger.warning(f"[解析] 无法确定 {project_id} 的规范 ID: {e}")
            return project_id

    async def list_versions(self, project_id: str) -> List[VersionRecord]:
        """完整遍历一次目录返回的版本序列"""
        return [version async for version in self.client.list_versions(project_id)]

    async def fetch(
        self, project_id: str
    ) -> Union[List[VersionRecord], ResolutionFailed]:
        """获取版本列表，失败时返回 ResolutionFailed 而不是抛出异常"""
        try:
            return await self.list_versions(project_id)
        except TransportError as e:
            logger.warning(f"[解析] 获取 {project_id} 的版本失败: {e}")
            return ResolutionFailed(str(e))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[解析] 解析 {project_id} 的版本数据失败: {e!r}")
            return ResolutionFailed(f"版本数据无效: {e!r}")

    def select(
        self,
        versions: Iterable[VersionRecord],
        target: Target,
        channel_preference: Channel = Channel.RELEASE,
        currently_installed: Installed = None,
        pinned: Optional[str] = None,
    ) -> ResolutionResult:
        """
        从已获取的版本列表中选择最佳版本

        Args:
            versions: 项目的全部版本
            target: 目标环境
            channel_preference: 通道偏好
            currently_installed: 当前已安装的版本
            pinned: 指定的版本 ID（或版本号）

        Returns:
            ResolutionResult
        """
        candidates = [version for version in versions if version.is_compatible(target)]
        if pinned is not None:
            candidates = [
                version
                for version in candidates
                if pinned in (version.version_id, version.name)
            ]

        if not candidates:
            return NoCompatibleVersion()

        best = max(candidates, key=lambda v: rank_key(v, channel_preference))

        if best.same_artifact(_installed_version(currently_installed)):
            return UpToDate(best)
        return Resolved(best)

    async def resolve(
        self,
        project_id: str,
        target: Target,
        channel_preference: Channel = Channel.RELEASE,
        currently_installed: Installed = None,
        pinned: Optional[str] = None,
    ) -> ResolutionResult:
        """查询目录并解析最佳版本"""
        versions = await self.fetch(project_id)
        if isinstance(versions, ResolutionFailed):
            return versions

        result = self.select(
            versions, target, channel_preference, currently_installed, pinned
        )
        if isinstance(result, NoCompatibleVersion):
            logger.debug(f"[解析] {project_id} 没有兼容 {target} 的版本")
        return result
