"""
本地状态模型

已安装记录，由 LocalProjectCache 独占维护。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from modkeeper.models.api import VersionRecord, parse_time


@dataclass(frozen=True)
class InstalledEntry:
    """
    已安装记录

    由 LocalProjectCache 独占维护，其他组件不得直接修改。
    """

    project_id: str
    version: VersionRecord
    path: str
    installed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_checked: Optional[datetime] = None
    # 用户主动安装为 True；只作为其他项目的依赖安装时为 False
    manual: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "version": self.version.to_dict(),
            "path": self.path,
            "manual": self.manual,
            "installed_at": self.installed_at.isoformat(),
            "last_checked": (
                self.last_checked.isoformat() if self.last_checked else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstalledEntry":
        last_checked = data.get("last_checked")
        return cls(
            project_id=data["project_id"],
            version=VersionRecord.from_dict(data["version"]),
            path=data["path"],
            installed_at=parse_time(data.get("installed_at")),
            last_checked=parse_time(last_checked) if last_checked else None,
            manual=bool(data.get("manual", True)),
        )
