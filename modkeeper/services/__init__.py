"""
ModKeeper 服务层

包含业务逻辑服务：版本解析、兼容性规划。
"""

from modkeeper.services.version_resolver import VersionResolver
from modkeeper.services.compatibility import CompatibilityEngine

__all__ = [
    "VersionResolver",
    "CompatibilityEngine",
]
