"""
持久化接口

LocalProjectCache 通过此接口读写已安装记录。
"""

import json
import os
from abc import ABC, abstractmethod
from typing import List
from urllib.parse import quote, unquote

import aiofiles
import aiofiles.os
from loguru import logger

from modkeeper.exceptions import PersistenceError
from modkeeper.models import InstalledEntry


class PersistenceBackend(ABC):
    """持久化后端抽象"""

    @abstractmethod
    async def read_all(self) -> List[InstalledEntry]:
        """读取全部已安装记录"""

    @abstractmethod
    async def write_entry(self, entry: InstalledEntry) -> None:
        """原子写入一条记录"""

    @abstractmethod
    async def delete_entry(self, project_id: str) -> None:
        """删除一条记录"""


class JsonDirectoryBackend(PersistenceBackend):
    """
    每个项目一个 JSON 文件

    写入时先写临时文件再 os.replace，记录总是整体替换，不会被部分修改。
    """

    SUFFIX = ".json"

    def __init__(self, state_dir: str):
        self.entries_dir = os.path.join(state_dir, "entries")

    def _path(self, project_id: str) -> str:
        return os.path.join(self.entries_dir, quote(project_id, safe="") + self.SUFFIX)

    async def read_all(self) -> List[InstalledEntry]:
        if not os.path.isdir(self.entries_dir):
            return []

        entries = []
        for name in sorted(os.listdir(self.entries_dir)):
            if not name.endswith(self.SUFFIX):
                continue
            path = os.path.join(self.entries_dir, name)
            try:
                async with aiofiles.open(path, "r", encoding="utf-8") as f:
                    data = json.loads(await f.read())
                entries.append(InstalledEntry.from_dict(data))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(
                    f"[缓存] 无法读取记录 {unquote(name[: -len(self.SUFFIX)])}: {e}"
                )
        return entries

    async def write_entry(self, entry: InstalledEntry) -> None:
        path = self._path(entry.project_id)
        temp_path = path + ".tmp"
        try:
            await aiofiles.os.makedirs(self.entries_dir, exist_ok=True)
            content = json.dumps(entry.to_dict(), indent=2, ensure_ascii=False)
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(content)
                await f.flush()
                os.fsync(f.fileno())
            await aiofiles.os.replace(temp_path, path)
        except OSError as e:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError as cleanup_error:
                    logger.warning(f"[缓存] 无法删除临时文件 {temp_path}: {cleanup_error}")
            raise PersistenceError(
                f"写入记录失败: {entry.project_id}",
                context={"path": path, "error": str(e)},
            ) from e

    async def delete_entry(self, project_id: str) -> None:
        path = self._path(project_id)
        try:
            if os.path.exists(path):
                await aiofiles.os.remove(path)
        except OSError as e:
            raise PersistenceError(
                f"删除记录失败: {project_id}",
                context={"path": path, "error": str(e)},
            ) from e
