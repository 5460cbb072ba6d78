"""
本地项目缓存

以项目 ID 为键，记录“当前安装了什么”，从不记录“现在应该是什么”。
是否过期总是通过 VersionResolver 查询目录得出。
"""

import dataclasses
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional

from loguru import logger

from modkeeper.models import InstalledEntry
from modkeeper.storage.persistence import PersistenceBackend


class LocalProjectCache:
    """本地项目缓存"""

    def __init__(self, backend: PersistenceBackend):
        self.backend = backend
        self._entries: Dict[str, InstalledEntry] = {}

    async def load(self) -> int:
        """从持久化后端加载全部记录"""
        entries = await self.backend.read_all()
        self._entries = {entry.project_id: entry for entry in entries}
        logger.debug(f"[缓存] 已加载 {len(self._entries)} 条安装记录")
        return len(self._entries)

    def get(self, project_id: str) -> Optional[InstalledEntry]:
        return self._entries.get(project_id)

    def list(self) -> List[InstalledEntry]:
        """按项目 ID 排序的全部记录"""
        return [self._entries[key] for key in sorted(self._entries)]

    def __contains__(self, project_id: str) -> bool:
        return project_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def upsert(self, entry: InstalledEntry) -> InstalledEntry:
        """
        写入或替换记录

        只能在文件已校验并移动到最终位置后调用。写入失败时抛出
        PersistenceError，内存中的旧记录保持不变。
        """
        await self.backend.write_entry(entry)
        self._entries[entry.project_id] = entry
        logger.debug(
            f"[缓存] 记录 {entry.project_id} -> {entry.version.version_id}"
        )
        return entry

    async def remove(self, project_id: str) -> Optional[InstalledEntry]:
        """删除记录"""
        if project_id not in self._entries:
            return None
        await self.backend.delete_entry(project_id)
        return self._entries.pop(project_id)

    async def touch(
        self, project_id: str, when: Optional[datetime] = None
    ) -> Optional[InstalledEntry]:
        """只更新 last_checked"""
        entry = self._entries.get(project_id)
        if entry is None:
            return None
        checked = dataclasses.replace(
            entry, last_checked=when or datetime.now(timezone.utc)
        )
        await self.backend.write_entry(checked)
        self._entries[project_id] = checked
        return checked

    async def set_manual(self, project_id: str, manual: bool) -> Optional[InstalledEntry]:
        """标记为用户主动安装或仅作为依赖安装"""
        entry = self._entries.get(project_id)
        if entry is None or entry.manual == manual:
            return entry
        return await self.upsert(dataclasses.replace(entry, manual=manual))

    async def prune_missing(self) -> List[str]:
        """删除文件已不存在的记录"""
        removed = []
        for entry in self.list():
            if not os.path.exists(entry.path):
                logger.debug(f"[缓存] 文件已不存在，移除记录 {entry.project_id}")
                await self.remove(entry.project_id)
                removed.append(entry.project_id)
        return removed

    async def close(self):
        """记录均为写穿，关闭时无需刷新"""
        logger.debug(f"[缓存] 关闭，共 {len(self._entries)} 条记录")
