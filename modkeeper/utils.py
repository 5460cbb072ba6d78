import json
from pathlib import Path

import toml
import yaml

from modkeeper.exceptions import ConfigError, ConfigParseError


def load_config(config_path: str) -> dict:
    """加载配置文件（toml / json / yaml）"""
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"配置文件不存在: {config_path}")

    suffix = path.suffix.lower()
    try:
        if suffix == ".toml":
            return toml.load(config_path)
        elif suffix == ".json":
            return json.loads(path.read_text(encoding="utf-8"))
        elif suffix in (".yaml", ".yml"):
            return yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (toml.TomlDecodeError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigParseError(
            f"配置文件解析失败: {config_path}", context={"error": str(e)}
        ) from e

    raise ConfigError(f"不支持的配置文件格式: {suffix}")
