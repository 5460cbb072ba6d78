"""
日志模块

控制台日志写到 stderr，stdout 只留给命令输出；可选再写一份到日志文件。
"""

import os
import sys
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} | {message}"


def debug_enabled(debug: Optional[bool] = None) -> bool:
    """命令行 --debug 优先，其次是 MODKEEPER_DEBUG 环境变量"""
    if debug:
        return True
    return os.environ.get("MODKEEPER_DEBUG", "0") == "1"


def setup_logger(
    debug: Optional[bool] = None,
    log_file: Optional[str] = None,
    console=None,
) -> str:
    """
    配置日志输出，返回生效的级别

    Args:
        debug: 是否启用调试级别
        log_file: 额外写入的日志文件，按大小轮转
        console: 控制台输出目标，默认 stderr
    """
    level = "DEBUG" if debug_enabled(debug) else "INFO"
    console = console or sys.stderr

    logger.remove()
    logger.add(
        console,
        format=CONSOLE_FORMAT,
        level=level,
        colorize=hasattr(console, "isatty") and console.isatty(),
        backtrace=level == "DEBUG",
        diagnose=level == "DEBUG",
    )
    if log_file:
        logger.add(
            log_file,
            format=FILE_FORMAT,
            level="DEBUG",
            rotation="5 MB",
            retention=3,
            encoding="utf-8",
            enqueue=True,
        )

    logger.debug(f"[日志] 级别 {level}" + (f"，同时写入 {log_file}" if log_file else ""))
    return level
