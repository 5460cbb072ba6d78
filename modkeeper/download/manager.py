"""
下载编排器

执行安装计划：准入控制、全局并发上限、传输重试、哈希校验、原子安装与取消。
"""

import asyncio
import dataclasses
import os
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Tuple

import aiofiles
from loguru import logger

from modkeeper.api.base import CatalogClient
from modkeeper.download.admission import AdmissionControl
from modkeeper.download.verifier import ArtifactVerifier
from modkeeper.events import EventBus, Phase
from modkeeper.exceptions import (
    DiskWriteError,
    DownloadError,
    ModKeeperError,
    TransportError,
)
from modkeeper.models import (
    DownloadTask,
    InstalledEntry,
    OutcomeStatus,
    Plan,
    PlanEntry,
    RemovalResult,
    TaskOutcome,
    VersionRecord,
)
from modkeeper.storage import LocalProjectCache

REMOVE_KEY = "<remove>"


@dataclass
class DownloadStats:
    """下载统计"""

    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    reused: int = 0
    retries: int = 0
    bytes_downloaded: int = 0


def _discard(path: Optional[str]):
    """删除文件，忽略不存在的情况"""
    if path and os.path.exists(path):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"[清理] 无法删除 {path}: {e}")


class DownloadOrchestrator:
    """下载编排器"""

    def __init__(
        self,
        catalog: CatalogClient,
        cache: LocalProjectCache,
        install_dir: str,
        events: Optional[EventBus] = None,
        max_concurrent: int = 5,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
    ):
        self.catalog = catalog
        self.cache = cache
        self.install_dir = install_dir
        self.events = events or EventBus()
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.admission = AdmissionControl()
        self.stats = DownloadStats()
        self._semaphore = asyncio.Semaphore(max_concurrent)

    def destination_for(self, version: VersionRecord) -> str:
        """版本文件的最终安装路径"""
        return os.path.join(self.install_dir, version.kind.directory, version.file_name)

    def task_for(self, entry: PlanEntry) -> DownloadTask:
        """把计划项转换为下载任务"""
        if not entry.actionable or entry.version is None:
            raise ValueError(f"计划项 {entry.project_id} 无需执行 ({entry.action.value})")
        return DownloadTask(
            project_id=entry.project_id,
            version=entry.version,
            destination=self.destination_for(entry.version),
            manual=entry.manual,
        )

    def submit(self, task: DownloadTask) -> "asyncio.Task[TaskOutcome]":
        """
        提交单个下载任务

        同一项目相同内容的请求会合并为一次下载；不同内容的请求排队执行。
        返回的任务总是产出 TaskOutcome，不会抛出异常。
        """
        running, coalesced = self.admission.admit(
            task.project_id,
            task.version.content_hash,
            lambda previous: self._run(task, previous),
        )
        if coalesced:
            logger.info(f"[合并] {task.project_id} 的下载已在进行中")
        else:
            self.stats.total += 1
        return asyncio.ensure_future(self._collect(task, running, coalesced))

    async def execute(self, plan: Plan) -> AsyncIterator[TaskOutcome]:
        """
        执行计划，按完成顺序逐个产出结果

        Skip 与 Conflict 项不会产生任务；单个任务失败不会影响其他任务。
        """
        pending = [self.submit(self.task_for(entry)) for entry in plan.actionable()]
        if pending:
            logger.info(
                f"[启动] 执行 {len(pending)} 个任务，最大并发数: {self.max_concurrent}"
            )
        for next_done in asyncio.as_completed(pending):
            yield await next_done

    async def run(self, plan: Plan) -> List[TaskOutcome]:
        """执行计划并收集全部结果"""
        return [outcome async for outcome in self.execute(plan)]

    async def _collect(
        self, task: DownloadTask, running: asyncio.Task, coalesced: bool
    ) -> TaskOutcome:
        await asyncio.wait({running})
        if running.cancelled():
            # 任务在开始执行前即被取消
            if not coalesced:
                self.stats.cancelled += 1
                await self.events.publish(task.project_id, Phase.FAILED, "cancelled")
            return TaskOutcome(
                task.project_id,
                OutcomeStatus.CANCELLED,
                version=task.version,
                coalesced=coalesced,
            )
        outcome = running.result()
        if coalesced:
            outcome = dataclasses.replace(outcome, coalesced=True)
        return outcome

    async def _run(
        self, task: DownloadTask, previous: Optional[asyncio.Task]
    ) -> TaskOutcome:
        """单个任务的完整流程"""
        project_id = task.project_id
        version_id = task.version.version_id
        attempts = 0
        part_path: Optional[str] = None

        try:
            if previous is not None:
                await asyncio.wait({previous})

            async with self._semaphore:
                entry = await self._reuse_existing(task)
                if entry is None:
                    while True:
                        attempts += 1
                        try:
                            part_path = await self._download(task)
                            break
                        except TransportError as e:
                            if not e.transient or attempts > self.max_retries:
                                raise
                            delay = self.retry_delay * (2 ** (attempts - 1))
                            self.stats.retries += 1
                            logger.warning(
                                f"[重试] 下载 {project_id} 失败 (第 {attempts} 次): {e}. "
                                f"{delay:.1f}s 后重试..."
                            )
                            await asyncio.sleep(delay)

                    entry = await self._commit_shielded(task, part_path)
                    part_path = None

        except asyncio.CancelledError:
            _discard(part_path)
            self.stats.cancelled += 1
            logger.info(f"[取消] {project_id} 的安装已取消")
            await self.events.publish(project_id, Phase.FAILED, "cancelled", version_id)
            return TaskOutcome(
                project_id,
                OutcomeStatus.CANCELLED,
                version=task.version,
                attempts=attempts,
            )
        except ModKeeperError as e:
            _discard(part_path)
            return await self._failed(task, e, attempts)
        except Exception as e:
            _discard(part_path)
            logger.exception(f"[错误] {project_id} 出现未预期的错误: {e}")
            return await self._failed(
                task, DownloadError(f"未预期的错误: {e!r}"), attempts
            )

        self.stats.completed += 1
        logger.success(f"[完成] {project_id} 已安装 {version_id}")
        await self.events.publish(project_id, Phase.INSTALLED, version_id=version_id)
        return TaskOutcome(
            project_id,
            OutcomeStatus.INSTALLED,
            version=task.version,
            entry=entry,
            attempts=attempts,
        )

    async def _failed(
        self, task: DownloadTask, error: ModKeeperError, attempts: int
    ) -> TaskOutcome:
        self.stats.failed += 1
        logger.error(f"[错误] {task.project_id} 安装失败: {error}")
        await self.events.publish(
            task.project_id, Phase.FAILED, str(error), task.version.version_id
        )
        return TaskOutcome(
            task.project_id,
            OutcomeStatus.FAILED,
            version=task.version,
            error=error,
            attempts=attempts,
        )

    async def _reuse_existing(self, task: DownloadTask) -> Optional[InstalledEntry]:
        """目标位置已有相同内容时跳过下载"""
        current = self.cache.get(task.project_id)
        if (
            current is not None
            and current.version.same_artifact(task.version)
            and current.path == task.destination
            and os.path.exists(current.path)
        ):
            self.stats.reused += 1
            logger.info(f"[跳过] {task.project_id} 已安装相同内容")
            return current

        if await ArtifactVerifier.is_valid(
            task.destination, task.version.content_hash
        ):
            self.stats.reused += 1
            logger.info(f"[跳过] '{task.version.file_name}' 已存在且校验通过")
            entry = await self.cache.upsert(
                InstalledEntry(
                    task.project_id,
                    task.version,
                    task.destination,
                    manual=task.manual,
                )
            )
            self._drop_previous(current, task.destination)
            return entry

        return None

    async def _download(self, task: DownloadTask) -> str:
        """
        下载到临时文件并校验

        Returns:
            已校验的临时文件路径
        """
        project_id = task.project_id
        verifier = ArtifactVerifier(task.version.content_hash, project_id)
        part_path = task.destination + ".part"

        try:
            os.makedirs(os.path.dirname(task.destination), exist_ok=True)
        except OSError as e:
            raise DiskWriteError(
                f"无法创建目录: {os.path.dirname(task.destination)}",
                context={"error": str(e)},
            ) from e

        logger.info(f"[开始] 下载: {task.version.file_name}")
        await self.events.publish(
            project_id, Phase.DOWNLOADING, version_id=task.version.version_id
        )

        try:
            async with aiofiles.open(part_path, "wb") as f:
                stream = self.catalog.fetch_bytes(task.version.locator)
                try:
                    while True:
                        try:
                            chunk = await asyncio.wait_for(
                                stream.__anext__(), self.timeout
                            )
                        except StopAsyncIteration:
                            break
                        except (asyncio.TimeoutError, ConnectionError) as e:
                            raise TransportError(
                                f"下载超时或连接中断: {e!r}",
                                transient=True,
                                context={"locator": task.version.locator},
                            ) from e
                        verifier.update(chunk)
                        self.stats.bytes_downloaded += len(chunk)
                        try:
                            await f.write(chunk)
                        except OSError as e:
                            raise DiskWriteError(
                                f"写入文件失败: {part_path}", context={"error": str(e)}
                            ) from e
                finally:
                    aclose = getattr(stream, "aclose", None)
                    if aclose is not None:
                        await aclose()
        except OSError as e:
            _discard(part_path)
            raise DiskWriteError(
                f"写入文件失败: {part_path}", context={"error": str(e)}
            ) from e
        except BaseException:
            _discard(part_path)
            raise

        await self.events.publish(
            project_id, Phase.VERIFYING, version_id=task.version.version_id
        )
        try:
            verifier.verify()
        except ModKeeperError:
            _discard(part_path)
            raise

        logger.debug(f"[校验] {project_id} 哈希匹配 ({verifier.size} 字节)")
        return part_path

    async def _commit_shielded(self, task: DownloadTask, part_path: str) -> InstalledEntry:
        """提交阶段不可取消：一旦开始移动文件，取消请求被忽略"""
        commit = asyncio.ensure_future(self._commit(task, part_path))
        try:
            return await asyncio.shield(commit)
        except asyncio.CancelledError:
            logger.debug(f"[提交] {task.project_id} 已开始提交，忽略取消")
            return await commit

    async def _commit(self, task: DownloadTask, part_path: str) -> InstalledEntry:
        """原子移动到最终位置并写入缓存，缓存写入失败时回滚"""
        destination = task.destination
        previous = self.cache.get(task.project_id)
        backup: Optional[str] = None

        try:
            if os.path.exists(destination):
                backup = destination + ".bak"
                os.replace(destination, backup)
            os.replace(part_path, destination)
        except OSError as e:
            if backup and not os.path.exists(destination):
                os.replace(backup, destination)
            _discard(part_path)
            raise DiskWriteError(
                f"安装文件失败: {destination}", context={"error": str(e)}
            ) from e

        try:
            entry = await self.cache.upsert(
                InstalledEntry(
                    task.project_id, task.version, destination, manual=task.manual
                )
            )
        except ModKeeperError:
            if backup:
                os.replace(backup, destination)
            else:
                _discard(destination)
            raise

        _discard(backup)
        self._drop_previous(previous, destination)
        return entry

    @staticmethod
    def _drop_previous(previous: Optional[InstalledEntry], destination: str):
        """更新后删除旧版本文件（路径不同时）"""
        if previous is not None and previous.path != destination:
            _discard(previous.path)

    def uninstall(self, project_id: str) -> "asyncio.Task[RemovalResult]":
        """卸载项目，与同项目的其他任务串行执行"""
        task, _ = self.admission.admit(
            project_id, REMOVE_KEY, lambda previous: self._remove(project_id, previous)
        )
        return task

    async def _remove(
        self, project_id: str, previous: Optional[asyncio.Task]
    ) -> RemovalResult:
        if previous is not None:
            await asyncio.wait({previous})

        entry = self.cache.get(project_id)
        if entry is None:
            logger.warning(f"[卸载] {project_id} 未安装")
            return RemovalResult(project_id)

        dependents = self.dependents_of(project_id)
        if dependents:
            # 仍被依赖：只降级为依赖项，不删除
            if entry.manual:
                await self.cache.upsert(dataclasses.replace(entry, manual=False))
            logger.warning(
                f"[卸载] {project_id} 被 {', '.join(dependents)} 依赖，保留为依赖项"
            )
            return RemovalResult(project_id, dependents=dependents)

        removed = [await self._drop(entry)]
        removed.extend(await self.prune_orphans())
        return RemovalResult(project_id, removed=tuple(removed))

    async def _drop(self, entry: InstalledEntry) -> InstalledEntry:
        await self.cache.remove(entry.project_id)
        _discard(entry.path)
        logger.success(f"[卸载] {entry.project_id} 已移除")
        await self.events.publish(
            entry.project_id, Phase.REMOVED, version_id=entry.version.version_id
        )
        return entry

    def dependents_of(self, project_id: str) -> Tuple[str, ...]:
        """依赖该项目的已安装项目"""
        return tuple(
            entry.project_id
            for entry in self.cache.list()
            if entry.project_id != project_id
            and any(
                dep.project_id == project_id
                for dep in entry.version.required_dependencies()
            )
        )

    async def prune_orphans(self) -> List[InstalledEntry]:
        """移除只作为依赖安装、且已没有任何项目依赖的记录"""
        removed: List[InstalledEntry] = []
        while True:
            orphans = [
                entry
                for entry in self.cache.list()
                if not entry.manual
                and not self.dependents_of(entry.project_id)
                and not self.admission.tasks(entry.project_id)
            ]
            if not orphans:
                return removed
            for entry in orphans:
                logger.info(f"[卸载] {entry.project_id} 已无依赖方")
                removed.append(await self._drop(entry))

    def cancel(self, project_id: str) -> bool:
        """取消项目尚未提交的任务"""
        return self.admission.cancel(project_id) > 0

    def cancel_all(self) -> int:
        """取消全部尚未提交的任务，已提交的不受影响"""
        count = self.admission.cancel_all()
        if count:
            logger.info(f"[取消] 已请求取消 {count} 个任务")
        return count

    async def wait_idle(self):
        """等待全部进行中任务结束"""
        while True:
            tasks = self.admission.tasks()
            if not tasks:
                return
            await asyncio.wait(tasks)

    async def close(self):
        """取消未提交任务并等待结束"""
        logger.debug("[停止] 正在停止下载编排器...")
        self.cancel_all()
        await self.wait_idle()
        logger.debug("[停止] 下载编排器已停止")

    def get_stats(self) -> DownloadStats:
        """获取下载统计"""
        return self.stats

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
