"""
主协调器

整合目录客户端、版本解析、兼容性引擎、本地缓存与下载编排，
管理进程级状态的完整生命周期：启动时从持久化层加载，
运行中只通过缓存的原子操作修改，关闭时取消未提交任务。
"""

from typing import Iterable, List, Mapping, Optional

from loguru import logger

from modkeeper.api import CatalogClient, ModrinthCatalog
from modkeeper.download import DownloadOrchestrator
from modkeeper.events import EventBus
from modkeeper.exceptions import PersistenceError
from modkeeper.models import (
    InstalledEntry,
    ModKeeperConfig,
    Plan,
    RemovalResult,
    Target,
    TaskOutcome,
)
from modkeeper.services import CompatibilityEngine, VersionResolver
from modkeeper.storage import (
    JsonDirectoryBackend,
    LocalProjectCache,
    PersistenceBackend,
)


class ModKeeper:
    """ModKeeper 主协调器"""

    def __init__(
        self,
        config: ModKeeperConfig,
        catalog: Optional[CatalogClient] = None,
        backend: Optional[PersistenceBackend] = None,
        events: Optional[EventBus] = None,
    ):
        self.config = config
        self.target = config.target
        self.events = events or EventBus()
        self.catalog = catalog or ModrinthCatalog(
            base_url=config.catalog.base_url,
            user_agent=config.catalog.user_agent,
            timeout=config.download.timeout,
        )
        self.cache = LocalProjectCache(backend or JsonDirectoryBackend(config.state_dir))
        self.resolver = VersionResolver(self.catalog)
        self.engine = CompatibilityEngine(
            self.resolver, self.events, channel_preference=config.channel
        )
        self.downloader = DownloadOrchestrator(
            self.catalog,
            self.cache,
            config.install_dir,
            events=self.events,
            max_concurrent=config.download.max_concurrent,
            max_retries=config.download.max_retries,
            retry_delay=config.download.retry_delay,
            timeout=config.download.timeout,
        )
        self._started = False
        # 启动时因文件丢失而移除的记录
        self.pruned: List[str] = []

    async def start(self):
        """加载已安装记录并清理文件已丢失的记录"""
        if self._started:
            return
        count = await self.cache.load()
        removed = await self.cache.prune_missing()
        self.pruned = removed
        if removed:
            logger.warning(f"[启动] 移除 {len(removed)} 条文件已丢失的记录: {removed}")
        logger.info(f"[启动] 目标 {self.target}，已安装 {count - len(removed)} 个项目")
        self._started = True

    def installed(self) -> List[InstalledEntry]:
        return self.cache.list()

    async def plan(
        self,
        desired: Iterable[str] = (),
        pins: Optional[Mapping[str, str]] = None,
        target: Optional[Target] = None,
    ) -> Plan:
        """生成计划（不修改任何状态）"""
        merged_pins = {**self.config.pins, **(pins or {})}
        return await self.engine.plan(
            target or self.target, self.cache.list(), desired, merged_pins
        )

    async def apply(self, plan: Plan) -> List[TaskOutcome]:
        """执行计划并记录检查时间"""
        outcomes = await self.downloader.run(plan)
        for entry in plan:
            if entry.version is not None and entry.project_id in self.cache:
                try:
                    if entry.manual:
                        await self.cache.set_manual(entry.project_id, True)
                    await self.cache.touch(entry.project_id)
                except PersistenceError as e:
                    logger.warning(f"[缓存] 无法更新 {entry.project_id} 的检查时间: {e}")

        failed = [outcome for outcome in outcomes if not outcome.ok]
        if failed:
            logger.warning(
                f"[结果] {len(outcomes) - len(failed)} 成功, {len(failed)} 失败/取消"
            )
        else:
            logger.success(f"[结果] {len(outcomes)} 个项目全部完成")
        return outcomes

    async def sync(
        self,
        desired: Iterable[str] = (),
        pins: Optional[Mapping[str, str]] = None,
    ) -> List[TaskOutcome]:
        """计划并执行：安装新增项目、更新已安装项目"""
        plan = await self.plan(desired, pins)
        return await self.apply(plan)

    async def update_all(self) -> List[TaskOutcome]:
        """更新全部已安装项目"""
        return await self.sync()

    async def switch_target(self, target: Target) -> Plan:
        """
        切换目标环境

        返回新目标下的计划，调用方检查冲突后再用 apply 执行。
        """
        logger.info(f"[切换] {self.target} -> {target}")
        self.target = target
        return await self.plan()

    async def uninstall(self, project_id: str) -> RemovalResult:
        """
        卸载项目

        仍被其他项目依赖时只降级为依赖项；卸载后清理不再被需要的依赖。
        """
        if self.cache and project_id not in self.cache:
            project_id = await self.resolver.canonical_id(project_id)
        return await self.downloader.uninstall(project_id)

    async def close(self):
        """取消未提交的任务并关闭客户端"""
        await self.downloader.close()
        await self.catalog.close()
        await self.cache.close()
        self._started = False

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
