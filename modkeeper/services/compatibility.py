"""
兼容性引擎

把逐项目的解析结果汇总为针对目标环境的一致安装计划：
构建依赖闭包、检测版本约束冲突、标记不兼容项。计划只是建议，不修改任何状态。
"""

import asyncio
import dataclasses
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from loguru import logger

from modkeeper.events import EventBus, Phase
from modkeeper.models import (
    Channel,
    Dependency,
    DependencyType,
    InstalledEntry,
    NoCompatibleVersion,
    Plan,
    PlanAction,
    PlanEntry,
    ResolutionFailed,
    ResolutionResult,
    Resolved,
    Target,
    UpToDate,
    VersionRecord,
)
from modkeeper.services.version_resolver import VersionResolver

# 约束收敛的最大轮数
MAX_PASSES = 8

Listing = Union[List[VersionRecord], ResolutionFailed]


def _selected(result: Optional[ResolutionResult]) -> Optional[VersionRecord]:
    if isinstance(result, (Resolved, UpToDate)):
        return result.version
    return None


class _PlanningPass:
    """单次规划过程中的目录查询记录，每个项目最多查询一次"""

    def __init__(self, resolver: VersionResolver, events: Optional[EventBus]):
        self.resolver = resolver
        self.events = events
        self._listings: Dict[str, "asyncio.Future[Listing]"] = {}
        self._ids: Dict[str, "asyncio.Future[str]"] = {}

    async def canonical(self, project_ids: Iterable[str]) -> List[str]:
        """把项目 ID（或 slug）映射为规范 ID，保持顺序"""
        futures = []
        for project_id in project_ids:
            future = self._ids.get(project_id)
            if future is None:
                future = asyncio.ensure_future(self.resolver.canonical_id(project_id))
                self._ids[project_id] = future
            futures.append(future)
        return list(await asyncio.gather(*futures))

    async def prefetch(self, project_ids: Iterable[str]):
        await asyncio.gather(*(self.versions(pid) for pid in project_ids))

    async def versions(self, project_id: str) -> Listing:
        listing = self._listings.get(project_id)
        if listing is None:
            listing = asyncio.ensure_future(self._fetch(project_id))
            self._listings[project_id] = listing
        return await listing

    async def _fetch(self, project_id: str) -> Listing:
        if self.events:
            await self.events.publish(project_id, Phase.RESOLVING)
        return await self.resolver.fetch(project_id)


@dataclass
class _Closure:
    """一轮依赖闭包遍历的结果"""

    results: Dict[str, ResolutionResult] = field(default_factory=dict)
    collisions: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    constraints: Dict[str, Dict[str, Optional[str]]] = field(default_factory=dict)
    edges: Dict[str, List[Dependency]] = field(default_factory=dict)


class CompatibilityEngine:
    """兼容性引擎"""

    def __init__(
        self,
        resolver: VersionResolver,
        events: Optional[EventBus] = None,
        channel_preference: Channel = Channel.RELEASE,
    ):
        self.resolver = resolver
        self.events = events
        self.channel_preference = channel_preference

    async def plan(
        self,
        target: Target,
        installed_entries: Iterable[InstalledEntry],
        desired_additions: Iterable[str] = (),
        pins: Optional[Mapping[str, str]] = None,
    ) -> Plan:
        """
        生成安装计划

        Args:
            target: 目标环境
            installed_entries: 当前已安装记录
            desired_additions: 需要新增的项目 ID
            pins: 项目 ID -> 指定版本

        Returns:
            Plan: 依赖在前、依赖方在后的有序计划
        """
        planning = _PlanningPass(self.resolver, self.events)

        # 计划、准入控制与缓存都以规范 ID 为键
        entries = list(installed_entries)
        installed = dict(
            zip(await planning.canonical(e.project_id for e in entries), entries)
        )
        desired = await planning.canonical(desired_additions)
        pins = dict(pins or {})
        pins = dict(zip(await planning.canonical(pins), pins.values()))

        manual = {pid for pid, entry in installed.items() if entry.manual}
        manual.update(desired)

        roots: List[str] = []
        for project_id in [*sorted(installed), *desired]:
            if project_id not in roots:
                roots.append(project_id)

        logger.info(f"[计划] 目标 {target}，根项目 {len(roots)} 个")

        constraints: Dict[str, Dict[str, Optional[str]]] = {}
        closure = _Closure()
        for _ in range(MAX_PASSES):
            closure = await self._walk(
                planning, target, installed, roots, pins, constraints
            )
            if closure.constraints == constraints:
                break
            constraints = closure.constraints
        else:
            logger.warning("[计划] 依赖约束未收敛，使用最后一轮结果")

        ordered = self._order(target, installed, roots, closure, manual)
        plan = Plan(target=target, entries=tuple(ordered))

        for entry in plan.conflicts():
            logger.warning(f"[冲突] {entry.project_id}: {entry.reason}")
        logger.info(
            f"[计划] 共 {len(plan)} 项，需执行 {len(plan.actionable())} 项，"
            f"冲突 {len(plan.conflicts())} 项"
        )
        return plan

    @staticmethod
    def _pin_for(
        project_id: str,
        user_pin: Optional[str],
        constraints: Mapping[str, Optional[str]],
        names: Mapping[str, str],
    ) -> Tuple[Optional[str], Tuple[str, ...]]:
        """
        返回 (指定版本 ID, 冲突约束描述)

        依赖约束总是版本 ID；用户指定的版本可以是版本 ID 或版本号，
        与约束比较时按 names (版本 ID -> 版本号) 对照。
        """
        wanted: Dict[str, List[str]] = {}
        for dependent, version_id in sorted(constraints.items()):
            if version_id:
                wanted.setdefault(version_id, []).append(
                    Dependency(project_id, version_id).describe(dependent)
                )

        if user_pin is None:
            if len(wanted) > 1:
                return None, tuple(sorted(d for ds in wanted.values() for d in ds))
            return next(iter(wanted), None), ()

        if not wanted:
            return user_pin, ()
        agreed = [vid for vid in wanted if user_pin in (vid, names.get(vid))]
        if len(wanted) == 1 and agreed:
            return agreed[0], ()
        described = [d for ds in wanted.values() for d in ds]
        described.append(f"pinned -> {project_id}@{user_pin}")
        return None, tuple(sorted(described))

    async def _walk(
        self,
        planning: _PlanningPass,
        target: Target,
        installed: Mapping[str, InstalledEntry],
        roots: List[str],
        pins: Mapping[str, str],
        constraints: Mapping[str, Mapping[str, Optional[str]]],
    ) -> _Closure:
        """按层遍历依赖闭包，同层项目并发查询"""
        closure = _Closure()
        frontier = list(roots)
        seen: Set[str] = set(roots)

        while frontier:
            await planning.prefetch(frontier)
            next_frontier: List[str] = []

            for project_id in frontier:
                listing = await planning.versions(project_id)
                names = (
                    {}
                    if isinstance(listing, ResolutionFailed)
                    else {version.version_id: version.name for version in listing}
                )
                pinned, clash = self._pin_for(
                    project_id,
                    pins.get(project_id),
                    constraints.get(project_id, {}),
                    names,
                )
                closure.edges[project_id] = []
                if clash:
                    closure.collisions[project_id] = clash
                    continue

                if isinstance(listing, ResolutionFailed):
                    closure.results[project_id] = listing
                    continue

                entry = installed.get(project_id)
                result = self.resolver.select(
                    listing,
                    target,
                    self.channel_preference,
                    entry.version if entry else None,
                    pinned,
                )
                closure.results[project_id] = result

                version = _selected(result)
                if version is None:
                    continue

                relevant = [
                    dep
                    for dep in version.dependencies
                    if dep.dependency_type
                    in (DependencyType.REQUIRED, DependencyType.INCOMPATIBLE)
                ]
                dep_ids = await planning.canonical(dep.project_id for dep in relevant)
                deps = [
                    dataclasses.replace(dep, project_id=dep_id)
                    for dep, dep_id in zip(relevant, dep_ids)
                ]

                for dep in sorted(deps, key=lambda d: d.project_id):
                    if dep.project_id == project_id:
                        continue
                    closure.edges[project_id].append(dep)
                    if dep.dependency_type != DependencyType.REQUIRED:
                        continue
                    closure.constraints.setdefault(dep.project_id, {})[
                        project_id
                    ] = dep.version_id
                    if dep.project_id not in seen:
                        seen.add(dep.project_id)
                        next_frontier.append(dep.project_id)

            frontier = next_frontier

        return closure

    def _order(
        self,
        target: Target,
        installed: Mapping[str, InstalledEntry],
        roots: List[str],
        closure: _Closure,
        manual: Set[str],
    ) -> List[PlanEntry]:
        """后序遍历：依赖先于依赖方"""
        decided: Dict[str, PlanEntry] = {}
        order: List[str] = []

        def visit(project_id: str, stack: Set[str]):
            if project_id in decided or project_id in stack:
                return
            stack.add(project_id)
            for dep in closure.edges.get(project_id, []):
                if dep.dependency_type == DependencyType.REQUIRED:
                    visit(dep.project_id, stack)
            stack.discard(project_id)
            entry = self._decide(project_id, target, installed, closure, decided)
            decided[project_id] = dataclasses.replace(
                entry, manual=project_id in manual
            )
            order.append(project_id)

        for root in roots:
            visit(root, set())

        return [decided[project_id] for project_id in order]

    @staticmethod
    def _decide(
        project_id: str,
        target: Target,
        installed: Mapping[str, InstalledEntry],
        closure: _Closure,
        decided: Mapping[str, PlanEntry],
    ) -> PlanEntry:
        required_by = tuple(sorted(closure.constraints.get(project_id, {})))

        if project_id in closure.collisions:
            return PlanEntry(
                project_id,
                PlanAction.CONFLICT,
                reason="版本约束冲突",
                constraints=closure.collisions[project_id],
                required_by=required_by,
            )

        result = closure.results[project_id]
        if isinstance(result, ResolutionFailed):
            return PlanEntry(
                project_id,
                PlanAction.SKIP,
                reason=f"解析失败: {result.reason}",
                required_by=required_by,
            )
        if isinstance(result, NoCompatibleVersion):
            return PlanEntry(
                project_id,
                PlanAction.CONFLICT,
                reason=f"没有兼容 {target} 的版本",
                constraints=tuple(
                    Dependency(project_id, version_id).describe(dependent)
                    for dependent, version_id in sorted(
                        closure.constraints.get(project_id, {}).items()
                    )
                    if version_id
                ),
                required_by=required_by,
            )

        version = result.version
        for dep in closure.edges.get(project_id, []):
            if dep.dependency_type == DependencyType.INCOMPATIBLE:
                if dep.project_id in closure.results:
                    return PlanEntry(
                        project_id,
                        PlanAction.CONFLICT,
                        version=version,
                        reason=f"与 {dep.project_id} 不兼容",
                        constraints=(f"{project_id} !-> {dep.project_id}",),
                        required_by=required_by,
                    )
                continue

            if dep.dependency_type != DependencyType.REQUIRED:
                continue
            dep_entry = decided.get(dep.project_id)
            if dep_entry is None:
                # 循环依赖，依赖方尚未决定
                continue
            if dep_entry.action == PlanAction.CONFLICT:
                return PlanEntry(
                    project_id,
                    PlanAction.CONFLICT,
                    version=version,
                    reason=f"依赖 {dep.project_id} 冲突: {dep_entry.reason}",
                    constraints=(dep.describe(project_id), *dep_entry.constraints),
                    required_by=required_by,
                )
            if dep_entry.action == PlanAction.SKIP and dep_entry.reason:
                return PlanEntry(
                    project_id,
                    PlanAction.SKIP,
                    version=version,
                    reason=f"依赖 {dep.project_id} 无法解析",
                    required_by=required_by,
                )

        if isinstance(result, UpToDate):
            return PlanEntry(
                project_id, PlanAction.SKIP, version=version, required_by=required_by
            )

        action = PlanAction.UPDATE if project_id in installed else PlanAction.INSTALL
        return PlanEntry(project_id, action, version=version, required_by=required_by)
