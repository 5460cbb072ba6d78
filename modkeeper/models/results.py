"""
解析结果、安装计划与下载任务模型

这些对象都是临时的，不会被持久化。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional, Tuple, Union

from modkeeper.models.api import Target, VersionRecord
from modkeeper.models.state import InstalledEntry


@dataclass(frozen=True)
class Resolved:
    """找到可安装的版本"""

    version: VersionRecord


@dataclass(frozen=True)
class UpToDate:
    """已安装版本即为最佳版本"""

    version: VersionRecord


@dataclass(frozen=True)
class NoCompatibleVersion:
    """没有兼容目标环境的版本（正常情况，不是错误）"""


@dataclass(frozen=True)
class ResolutionFailed:
    """目录服务查询失败"""

    reason: str


ResolutionResult = Union[Resolved, UpToDate, NoCompatibleVersion, ResolutionFailed]


class PlanAction(Enum):
    """计划动作"""

    INSTALL = "install"
    UPDATE = "update"
    SKIP = "skip"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class PlanEntry:
    """计划中的一项"""

    project_id: str
    action: PlanAction
    version: Optional[VersionRecord] = None
    reason: Optional[str] = None
    constraints: Tuple[str, ...] = ()
    required_by: Tuple[str, ...] = ()
    # False 表示只因其他项目依赖而存在
    manual: bool = True

    @property
    def actionable(self) -> bool:
        return self.action in (PlanAction.INSTALL, PlanAction.UPDATE)


@dataclass(frozen=True)
class Plan:
    """
    兼容性引擎输出的建议计划

    只描述动作，不修改任何状态；由 DownloadOrchestrator 执行。
    """

    target: Target
    entries: Tuple[PlanEntry, ...] = ()

    def __iter__(self) -> Iterator[PlanEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, project_id: str) -> Optional[PlanEntry]:
        for entry in self.entries:
            if entry.project_id == project_id:
                return entry
        return None

    def actionable(self) -> Tuple[PlanEntry, ...]:
        return tuple(entry for entry in self.entries if entry.actionable)

    def conflicts(self) -> Tuple[PlanEntry, ...]:
        return tuple(
            entry for entry in self.entries if entry.action == PlanAction.CONFLICT
        )


@dataclass(frozen=True)
class DownloadTask:
    """下载任务，只在一次安装/更新执行期间存在"""

    project_id: str
    version: VersionRecord
    destination: str
    manual: bool = True


class OutcomeStatus(Enum):
    """任务结果状态"""

    INSTALLED = "installed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TaskOutcome:
    """单个项目的执行结果"""

    project_id: str
    status: OutcomeStatus
    version: Optional[VersionRecord] = None
    entry: Optional[InstalledEntry] = None
    error: Optional[BaseException] = None
    attempts: int = 0
    coalesced: bool = False

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.INSTALLED


@dataclass(frozen=True)
class RemovalResult:
    """
    卸载结果

    removed 包含被卸载的项目以及随之清理的孤立依赖；
    项目仍被其他已安装项目依赖时不会删除，dependents 列出这些项目。
    """

    project_id: str
    removed: Tuple[InstalledEntry, ...] = ()
    dependents: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return bool(self.removed)
