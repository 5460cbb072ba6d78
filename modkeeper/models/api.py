"""
目录数据模型

定义远程目录相关的数据类，包括项目、版本记录、依赖与目标环境。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

EPOCH = datetime.fromtimestamp(0, timezone.utc)


def parse_time(value: Optional[str]) -> datetime:
    """解析 ISO-8601 时间字符串，缺失时返回 EPOCH"""
    if not value:
        return EPOCH
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ResourceKind(Enum):
    """资源类型"""

    MOD = "mod"
    SHADER = "shader"
    RESOURCE_PACK = "resourcepack"
    DATAPACK = "datapack"
    PLUGIN = "plugin"

    @classmethod
    def parse(cls, value: str) -> "ResourceKind":
        """解析资源类型，兼容目录服务的别名"""
        aliases = {
            "mod": cls.MOD,
            "shader": cls.SHADER,
            "shaderpack": cls.SHADER,
            "resourcepack": cls.RESOURCE_PACK,
            "resource_pack": cls.RESOURCE_PACK,
            "resource-pack": cls.RESOURCE_PACK,
            "texturepack": cls.RESOURCE_PACK,
            "datapack": cls.DATAPACK,
            "plugin": cls.PLUGIN,
        }
        try:
            return aliases[value.lower()]
        except KeyError:
            raise ValueError(f"未知的资源类型: {value}") from None

    @property
    def directory(self) -> str:
        """安装子目录"""
        return {
            ResourceKind.MOD: "mods",
            ResourceKind.SHADER: "shaderpacks",
            ResourceKind.RESOURCE_PACK: "resourcepacks",
            ResourceKind.DATAPACK: "datapacks",
            ResourceKind.PLUGIN: "plugins",
        }[self]

    @property
    def filters_loader(self) -> bool:
        """是否按目标加载器过滤（光影、资源包、数据包只按游戏版本过滤）"""
        return self in (ResourceKind.MOD, ResourceKind.PLUGIN)


class Channel(Enum):
    """发布通道"""

    RELEASE = "release"
    BETA = "beta"
    ALPHA = "alpha"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Channel":
        if not value:
            return cls.ALPHA
        try:
            return cls(value.lower())
        except ValueError:
            return cls.ALPHA

    @property
    def rank(self) -> int:
        """稳定性等级，越小越稳定"""
        return {Channel.RELEASE: 0, Channel.BETA: 1, Channel.ALPHA: 2}[self]


class DependencyType(Enum):
    """依赖类型"""

    REQUIRED = "required"
    OPTIONAL = "optional"
    INCOMPATIBLE = "incompatible"
    EMBEDDED = "embedded"

    @classmethod
    def parse(cls, value: Optional[str]) -> "DependencyType":
        try:
            return cls((value or "required").lower())
        except ValueError:
            return cls.OPTIONAL


@dataclass(frozen=True)
class Project:
    """远程项目标识"""

    id: str
    name: str
    kind: ResourceKind = ResourceKind.MOD


@dataclass(frozen=True)
class Dependency:
    """依赖信息，version_id 为 None 时表示任意兼容版本"""

    project_id: str
    version_id: Optional[str] = None
    dependency_type: DependencyType = DependencyType.REQUIRED

    def describe(self, dependent: str) -> str:
        wanted = self.version_id or "*"
        return f"{dependent} -> {self.project_id}@{wanted}"


@dataclass(frozen=True)
class Target:
    """当前游戏环境：游戏版本 + 加载器"""

    game_version: str
    loader: str

    def __post_init__(self):
        object.__setattr__(self, "loader", self.loader.lower())

    def __str__(self) -> str:
        return f"{self.game_version}-{self.loader}"


@dataclass(frozen=True)
class VersionRecord:
    """
    项目的一个可发布版本。

    content_hash 唯一标识文件内容，哈希相同的两个版本记录可以互换。
    """

    project_id: str
    version_id: str
    game_versions: Tuple[str, ...] = ()
    loaders: Tuple[str, ...] = ()
    channel: Channel = Channel.RELEASE
    content_hash: str = ""
    locator: str = ""
    filename: str = ""
    published_at: datetime = EPOCH
    dependencies: Tuple[Dependency, ...] = ()
    kind: ResourceKind = ResourceKind.MOD
    name: str = ""

    def __post_init__(self):
        object.__setattr__(self, "game_versions", tuple(self.game_versions))
        object.__setattr__(
            self, "loaders", tuple(loader.lower() for loader in self.loaders)
        )
        object.__setattr__(self, "dependencies", tuple(self.dependencies))
        object.__setattr__(self, "content_hash", self.content_hash.lower())

    @property
    def file_name(self) -> str:
        """安装文件名"""
        if self.filename:
            return self.filename
        if self.locator:
            return self.locator.rstrip("/").split("/")[-1]
        return f"{self.project_id}-{self.version_id}.jar"

    def same_artifact(self, other: Optional["VersionRecord"]) -> bool:
        """是否为同一份文件内容"""
        return (
            other is not None
            and bool(self.content_hash)
            and self.content_hash == other.content_hash
        )

    def is_compatible(self, target: Target) -> bool:
        """检查是否兼容目标环境"""
        if target.game_version not in self.game_versions:
            return False
        if self.kind.filters_loader and target.loader not in self.loaders:
            return False
        return True

    def required_dependencies(self) -> Iterable[Dependency]:
        return (
            dep
            for dep in self.dependencies
            if dep.dependency_type == DependencyType.REQUIRED
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "version_id": self.version_id,
            "name": self.name,
            "kind": self.kind.value,
            "game_versions": list(self.game_versions),
            "loaders": list(self.loaders),
            "channel": self.channel.value,
            "content_hash": self.content_hash,
            "locator": self.locator,
            "filename": self.filename,
            "published_at": self.published_at.isoformat(),
            "dependencies": [
                {
                    "project_id": dep.project_id,
                    "version_id": dep.version_id,
                    "dependency_type": dep.dependency_type.value,
                }
                for dep in self.dependencies
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VersionRecord":
        return cls(
            project_id=data["project_id"],
            version_id=data["version_id"],
            name=data.get("name", ""),
            kind=ResourceKind.parse(data.get("kind", "mod")),
            game_versions=tuple(data.get("game_versions", [])),
            loaders=tuple(data.get("loaders", [])),
            channel=Channel.parse(data.get("channel")),
            content_hash=data.get("content_hash", ""),
            locator=data.get("locator", ""),
            filename=data.get("filename", ""),
            published_at=parse_time(data.get("published_at")),
            dependencies=tuple(
                Dependency(
                    project_id=dep["project_id"],
                    version_id=dep.get("version_id"),
                    dependency_type=DependencyType.parse(dep.get("dependency_type")),
                )
                for dep in data.get("dependencies", [])
            ),
        )
