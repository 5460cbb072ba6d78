"""
ModKeeper 数据模型包

包含目录模型、本地状态模型、计划/结果模型与配置模型。
"""

from modkeeper.models.api import (
    EPOCH,
    ResourceKind,
    Channel,
    DependencyType,
    Project,
    Dependency,
    Target,
    VersionRecord,
)
from modkeeper.models.state import InstalledEntry
from modkeeper.models.results import (
    Resolved,
    UpToDate,
    NoCompatibleVersion,
    ResolutionFailed,
    ResolutionResult,
    PlanAction,
    PlanEntry,
    Plan,
    DownloadTask,
    OutcomeStatus,
    TaskOutcome,
    RemovalResult,
)
from modkeeper.models.config import (
    DownloadConfig,
    CatalogConfig,
    ModKeeperConfig,
)

__all__ = [
    # 目录模型
    "EPOCH",
    "ResourceKind",
    "Channel",
    "DependencyType",
    "Project",
    "Dependency",
    "Target",
    "VersionRecord",
    # 本地状态
    "InstalledEntry",
    # 解析结果与计划
    "Resolved",
    "UpToDate",
    "NoCompatibleVersion",
    "ResolutionFailed",
    "ResolutionResult",
    "PlanAction",
    "PlanEntry",
    "Plan",
    "DownloadTask",
    "OutcomeStatus",
    "TaskOutcome",
    "RemovalResult",
    # 配置模型
    "DownloadConfig",
    "CatalogConfig",
    "ModKeeperConfig",
]
