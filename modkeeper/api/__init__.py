"""
ModKeeper 目录客户端层
"""

from modkeeper.api.base import CatalogClient
from modkeeper.api.modrinth import ModrinthCatalog

__all__ = [
    "CatalogClient",
    "ModrinthCatalog",
]
