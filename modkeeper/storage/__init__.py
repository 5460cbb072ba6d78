"""
ModKeeper 存储层

包含持久化接口与本地项目缓存。
"""

from modkeeper.storage.persistence import PersistenceBackend, JsonDirectoryBackend
from modkeeper.storage.project_cache import LocalProjectCache

__all__ = [
    "PersistenceBackend",
    "JsonDirectoryBackend",
    "LocalProjectCache",
]
