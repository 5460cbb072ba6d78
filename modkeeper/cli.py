"""
CLI 模块

命令行接口实现。
"""

import asyncio
from typing import Dict, Iterable, Optional

import click
from loguru import logger

from modkeeper.events import Phase, StatusEvent
from modkeeper.exceptions import ModKeeperError
from modkeeper.logger import setup_logger
from modkeeper.models import ModKeeperConfig, Plan, PlanAction, Target
from modkeeper.orchestrator import ModKeeper
from modkeeper.utils import load_config

ACTION_SYMBOLS = {
    PlanAction.INSTALL: "+",
    PlanAction.UPDATE: "↑",
    PlanAction.SKIP: "=",
    PlanAction.CONFLICT: "✗",
}


def _build_config(config_path: str, target: Optional[str]) -> ModKeeperConfig:
    config = ModKeeperConfig.from_dict(load_config(config_path))
    if target:
        game_version, _, loader = target.partition(":")
        if not loader:
            raise click.BadParameter("格式应为 <游戏版本>:<加载器>", param_hint="--target")
        config.target = Target(game_version, loader)
    return config


def _echo_plan(plan: Plan):
    click.echo(f"目标: {plan.target}")
    for entry in plan:
        version = entry.version.version_id if entry.version else "-"
        line = f"  [{ACTION_SYMBOLS[entry.action]}] {entry.project_id} {version}"
        if entry.reason:
            line += f"  ({entry.reason})"
        click.echo(line)
        for constraint in entry.constraints:
            click.echo(f"        {constraint}")


def _echo_event(event: StatusEvent):
    if event.phase in (Phase.INSTALLED, Phase.FAILED, Phase.REMOVED):
        reason = f": {event.reason}" if event.reason else ""
        click.echo(f"  {event.phase.value:<10} {event.project_id}{reason}")


async def run_async(
    config_path: str,
    command: str,
    target: Optional[str] = None,
    projects: Iterable[str] = (),
    pins: Optional[Dict[str, str]] = None,
) -> int:
    """异步运行，返回退出码"""
    try:
        config = _build_config(config_path, target)
    except ModKeeperError as e:
        logger.error(f"配置错误: {e}")
        raise click.ClickException(str(e))

    desired = [*config.projects, *projects]

    async with ModKeeper(config) as keeper:
        keeper.events.subscribe(_echo_event)

        if command == "list":
            for entry in keeper.installed():
                click.echo(
                    f"{entry.project_id}  {entry.version.version_id}  {entry.path}"
                )
            return 0

        if command == "prune":
            # start() 已经清理过一次，这里合并两次的结果
            removed = [*keeper.pruned, *await keeper.cache.prune_missing()]
            click.echo(f"已移除 {len(removed)} 条记录")
            for project_id in removed:
                click.echo(f"  {project_id}")
            return 0

        plan = await keeper.plan(desired, pins)
        _echo_plan(plan)
        if command == "plan":
            return 1 if plan.conflicts() else 0

        outcomes = await keeper.apply(plan)
        return 0 if all(outcome.ok for outcome in outcomes) else 1


def _run(coro) -> None:
    try:
        code = asyncio.run(coro)
    except ModKeeperError as e:
        logger.error(f"运行失败: {e}")
        raise click.ClickException(str(e))
    if code:
        raise SystemExit(code)


def _parse_pins(values: Iterable[str]) -> Dict[str, str]:
    pins = {}
    for value in values:
        project_id, sep, version_id = value.partition("@")
        if not sep or not version_id:
            raise click.BadParameter(f"格式应为 <项目>@<版本>: {value}", param_hint="--pin")
        pins[project_id] = version_id
    return pins


@click.group()
@click.option("--debug", is_flag=True, help="启用调试模式")
@click.option("--log-file", type=click.Path(dir_okay=False), help="同时写入日志文件")
@click.version_option(version="0.1.0")
def main(debug: bool, log_file: Optional[str]):
    """ModKeeper - 游戏资源兼容性管理工具"""
    setup_logger(debug=debug, log_file=log_file)


config_argument = click.argument(
    "config", type=click.Path(exists=True), default="modkeeper.toml"
)
target_option = click.option("-t", "--target", help="覆盖目标环境，如 1.20.1:fabric")


@main.command()
@config_argument
@target_option
@click.option("-a", "--add", "projects", multiple=True, help="新增项目（可多次使用）")
@click.option("--pin", "pins", multiple=True, help="指定版本 <项目>@<版本>")
def plan(config: str, target: Optional[str], projects: tuple, pins: tuple):
    """显示安装计划"""
    _run(run_async(config, "plan", target, projects, _parse_pins(pins)))


@main.command()
@config_argument
@target_option
@click.option("-a", "--add", "projects", multiple=True, help="新增项目（可多次使用）")
@click.option("--pin", "pins", multiple=True, help="指定版本 <项目>@<版本>")
def sync(config: str, target: Optional[str], projects: tuple, pins: tuple):
    """安装并更新项目"""
    _run(run_async(config, "sync", target, projects, _parse_pins(pins)))


@main.command(name="list")
@config_argument
def list_installed(config: str):
    """列出已安装项目"""
    _run(run_async(config, "list"))


@main.command()
@config_argument
def prune(config: str):
    """移除文件已丢失的记录"""
    _run(run_async(config, "prune"))


@main.command()
@config_argument
@click.argument("project_id")
def remove(config: str, project_id: str):
    """卸载项目"""

    async def _remove() -> int:
        cfg = _build_config(config, None)
        async with ModKeeper(cfg) as keeper:
            result = await keeper.uninstall(project_id)
            if result.dependents:
                click.echo(
                    f"{result.project_id} 被 {', '.join(result.dependents)} 依赖，保留为依赖项"
                )
                return 1
            if not result.ok:
                click.echo(f"{project_id} 未安装")
                return 1
            for entry in result.removed:
                click.echo(f"已卸载 {entry.project_id} ({entry.version.version_id})")
            return 0

    _run(_remove())


if __name__ == "__main__":
    main()
