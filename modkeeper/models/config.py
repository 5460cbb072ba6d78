"""
配置模型

从配置字典构建 ModKeeper 配置。
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from modkeeper.exceptions import ConfigValidationError
from modkeeper.models.api import Channel, Target

MODRINTH_BASE_URL = "https://api.modrinth.com/v2"
DEFAULT_USER_AGENT = "modkeeper/0.1.0"


@dataclass
class DownloadConfig:
    """下载配置"""

    max_concurrent: int = 5
    max_retries: int = 3
    retry_delay: float = 1.0
    timeout: float = 30.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DownloadConfig":
        config = cls(
            max_concurrent=data.get("max_concurrent", 5),
            max_retries=data.get("max_retries", 3),
            retry_delay=data.get("retry_delay", 1.0),
            timeout=data.get("timeout", 30.0),
        )
        if not isinstance(config.max_concurrent, int) or config.max_concurrent <= 0:
            raise ConfigValidationError(
                "max_concurrent 必须为正整数",
                context={"max_concurrent": config.max_concurrent},
            )
        if not isinstance(config.max_retries, int) or config.max_retries < 0:
            raise ConfigValidationError(
                "max_retries 必须为非负整数",
                context={"max_retries": config.max_retries},
            )
        return config


@dataclass
class CatalogConfig:
    """目录服务配置"""

    base_url: str = MODRINTH_BASE_URL
    user_agent: str = DEFAULT_USER_AGENT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CatalogConfig":
        return cls(
            base_url=data.get("base_url", MODRINTH_BASE_URL).rstrip("/"),
            user_agent=data.get("user_agent", DEFAULT_USER_AGENT),
        )


@dataclass
class ModKeeperConfig:
    """ModKeeper 主配置"""

    target: Target
    install_dir: str
    channel: Channel = Channel.RELEASE
    state_dir: Optional[str] = None
    projects: List[str] = field(default_factory=list)
    pins: Dict[str, str] = field(default_factory=dict)
    download: DownloadConfig = field(default_factory=DownloadConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)

    def __post_init__(self):
        if self.state_dir is None:
            self.state_dir = os.path.join(self.install_dir, ".modkeeper")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModKeeperConfig":
        """从字典创建配置"""
        target = data.get("target")
        if not isinstance(target, dict):
            raise ConfigValidationError("请配置 target (game_version / loader)")

        game_version = target.get("game_version")
        loader = target.get("loader")
        if not game_version or not loader:
            raise ConfigValidationError(
                "target 必须同时包含 game_version 和 loader", context=target
            )

        channel = data.get("channel", "release")
        try:
            channel = Channel(str(channel).lower())
        except ValueError:
            raise ConfigValidationError(
                "channel 必须为 release/beta/alpha", context={"channel": channel}
            ) from None

        install_dir = data.get("install_dir")
        if not install_dir:
            raise ConfigValidationError("请配置 install_dir")

        projects = data.get("projects", [])
        if isinstance(projects, str):
            projects = [projects]

        return cls(
            target=Target(str(game_version), str(loader)),
            install_dir=install_dir,
            channel=channel,
            state_dir=data.get("state_dir"),
            projects=list(projects),
            pins=dict(data.get("pins", {})),
            download=DownloadConfig.from_dict(data.get("download", {})),
            catalog=CatalogConfig.from_dict(data.get("catalog", {})),
        )
