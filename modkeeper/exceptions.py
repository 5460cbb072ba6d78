"""
ModKeeper 统一异常体系

提供分层的异常结构，支持错误代码、上下文信息和 JSON 序列化。

注意：NoCompatibleVersion 与 Conflict 不是异常，而是解析结果与计划动作，
见 modkeeper.models。
"""

from typing import Any, Dict, Optional


class ModKeeperError(Exception):
    """ModKeeper 基础异常类"""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self._get_default_code()
        self.context = context or {}

    def _get_default_code(self) -> str:
        """获取默认错误代码"""
        return "E000"

    def to_dict(self) -> Dict[str, Any]:
        """将异常转换为字典格式"""
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "type": self.__class__.__name__,
        }

    def __str__(self) -> str:
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message


class ConfigError(ModKeeperError):
    """配置相关错误"""

    def _get_default_code(self) -> str:
        return "E100"


class ConfigParseError(ConfigError):
    """配置解析错误"""

    def _get_default_code(self) -> str:
        return "E101"


class ConfigValidationError(ConfigError):
    """配置验证错误"""

    def _get_default_code(self) -> str:
        return "E102"


class TransportError(ModKeeperError):
    """
    目录服务传输错误

    transient 为 True 时（超时、连接重置、5xx）允许重试。
    """

    def __init__(
        self,
        message: str,
        transient: bool = False,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code, context)
        self.transient = transient
        self.context["transient"] = transient

    def _get_default_code(self) -> str:
        return "E200"


class VersionGoneError(TransportError):
    """版本或项目已不存在（404 类），不可重试"""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, transient=False, code=code, context=context)

    def _get_default_code(self) -> str:
        return "E404"


class DownloadError(ModKeeperError):
    """下载相关错误"""

    def _get_default_code(self) -> str:
        return "E300"


class IntegrityError(DownloadError):
    """内容哈希校验失败"""

    def _get_default_code(self) -> str:
        return "E302"


class DiskWriteError(DownloadError):
    """下载文件写入或移动失败"""

    def _get_default_code(self) -> str:
        return "E303"


class PersistenceError(ModKeeperError):
    """本地项目缓存写入失败"""

    def _get_default_code(self) -> str:
        return "E600"


__all__ = [
    # 基础异常
    "ModKeeperError",
    # 配置异常
    "ConfigError",
    "ConfigParseError",
    "ConfigValidationError",
    # 传输异常
    "TransportError",
    "VersionGoneError",
    # 下载异常
    "DownloadError",
    "IntegrityError",
    "DiskWriteError",
    # 持久化异常
    "PersistenceError",
]
