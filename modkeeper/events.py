"""
状态事件

核心向展示层输出的事件流：每个任务在每次阶段切换时至少发出一次事件。
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

from loguru import logger


class Phase(Enum):
    """任务阶段"""

    RESOLVING = "resolving"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    INSTALLED = "installed"
    FAILED = "failed"
    REMOVED = "removed"


@dataclass(frozen=True)
class StatusEvent:
    """状态事件"""

    project_id: str
    phase: Phase
    reason: Optional[str] = None
    version_id: Optional[str] = None


Listener = Callable[[StatusEvent], Union[None, Awaitable[None]]]


class EventBus:
    """
    事件分发器

    监听器可以是普通函数或协程函数；监听器抛出的异常只记录日志，
    不会影响任务本身。
    """

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Listener:
        """注册监听器"""
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Listener) -> bool:
        """移除监听器"""
        if listener in self._listeners:
            self._listeners.remove(listener)
            return True
        return False

    async def emit(self, event: StatusEvent):
        """向所有监听器分发事件"""
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    f"[事件] 监听器处理 {event.phase.name} ({event.project_id}) 失败: {e}"
                )

    async def publish(
        self,
        project_id: str,
        phase: Phase,
        reason: Optional[str] = None,
        version_id: Optional[str] = None,
    ):
        await self.emit(StatusEvent(project_id, phase, reason, version_id))
