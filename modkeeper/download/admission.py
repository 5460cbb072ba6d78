"""
准入控制

同一项目任意时刻最多一个进行中的任务：相同请求合并到已有任务，
不同请求排在已有任务之后执行。
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from loguru import logger

T = TypeVar("T")

TaskFactory = Callable[[Optional[asyncio.Task]], Awaitable[T]]


class AdmissionControl:
    """按项目的进行中任务登记表"""

    def __init__(self):
        # 项目 ID -> [(请求标识, 任务)]，最后一项为最新任务
        self._in_flight: Dict[str, List[Tuple[str, asyncio.Task]]] = {}
        self.coalesced = 0

    def admit(
        self, project_id: str, key: str, factory: TaskFactory
    ) -> Tuple[asyncio.Task, bool]:
        """
        提交任务

        Args:
            project_id: 项目 ID
            key: 请求标识，相同标识的请求会被合并
            factory: 接收前一个任务（可能为 None）并返回协程的工厂

        Returns:
            (任务, 是否被合并)
        """
        queue = self._in_flight.setdefault(project_id, [])
        previous: Optional[asyncio.Task] = None
        if queue:
            last_key, last_task = queue[-1]
            if last_key == key and not last_task.done():
                self.coalesced += 1
                logger.debug(f"[准入] {project_id} 已有相同任务进行中，合并请求")
                return last_task, True
            previous = last_task

        task = asyncio.ensure_future(factory(previous))
        queue.append((key, task))
        task.add_done_callback(lambda done: self._release(project_id, done))
        return task, False

    def _release(self, project_id: str, task: asyncio.Task):
        queue = self._in_flight.get(project_id)
        if queue is None:
            return
        queue[:] = [item for item in queue if item[1] is not task]
        if not queue:
            del self._in_flight[project_id]

    def tasks(self, project_id: Optional[str] = None) -> List[asyncio.Task]:
        if project_id is not None:
            return [task for _, task in self._in_flight.get(project_id, [])]
        return [task for queue in self._in_flight.values() for _, task in queue]

    def cancel(self, project_id: str) -> int:
        """取消项目的全部进行中任务"""
        return sum(1 for task in self.tasks(project_id) if task.cancel())

    def cancel_all(self) -> int:
        """取消全部进行中任务"""
        return sum(1 for task in self.tasks() if task.cancel())

    def __len__(self) -> int:
        return len(self._in_flight)
