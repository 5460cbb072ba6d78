"""
ModKeeper - 游戏资源兼容性管理工具

按目标游戏版本与加载器解析兼容版本、规划依赖闭包，
并发下载、校验并原子地安装到本地。
"""

from modkeeper.events import EventBus, Phase, StatusEvent
from modkeeper.exceptions import ModKeeperError
from modkeeper.logger import setup_logger
from modkeeper.models import ModKeeperConfig, Plan, PlanAction, Target
from modkeeper.orchestrator import ModKeeper

__version__ = "0.1.0"

__all__ = [
    "ModKeeper",
    "ModKeeperConfig",
    "ModKeeperError",
    "EventBus",
    "Phase",
    "StatusEvent",
    "Plan",
    "PlanAction",
    "Target",
    "setup_logger",
    "__version__",
]
