import asyncio
import json

from click.testing import CliRunner
from loguru import logger

from modkeeper.cli import _parse_pins, main
from modkeeper.models import InstalledEntry
from modkeeper.storage import JsonDirectoryBackend, LocalProjectCache

from conftest import FakeCatalog


def write_config(tmp_path, **extra):
    path = tmp_path / "modkeeper.json"
    path.write_text(
        json.dumps(
            {
                "target": {"game_version": "1.20.1", "loader": "fabric"},
                "install_dir": str(tmp_path / "game"),
                **extra,
            }
        )
    )
    return str(path)


def seed(tmp_path, present: bool):
    version = FakeCatalog().add("sodium", "s1")
    artifact = tmp_path / "sodium.jar"
    if present:
        artifact.write_bytes(b"x")
    cache = LocalProjectCache(JsonDirectoryBackend(str(tmp_path / "game" / ".modkeeper")))
    asyncio.run(cache.upsert(InstalledEntry("sodium", version, str(artifact))))


def test_list_empty(tmp_path):
    result = CliRunner().invoke(main, ["list", write_config(tmp_path)])

    assert result.exit_code == 0
    assert "sodium" not in result.output


def test_list_installed(tmp_path):
    seed(tmp_path, present=True)

    result = CliRunner().invoke(main, ["list", write_config(tmp_path)])

    assert result.exit_code == 0
    assert "sodium  s1" in result.output


def test_missing_file_dropped_on_start(tmp_path):
    seed(tmp_path, present=False)
    config = write_config(tmp_path)

    pruned = CliRunner().invoke(main, ["prune", config])
    listed = CliRunner().invoke(main, ["list", config])

    assert pruned.exit_code == 0
    assert "已移除 1 条记录" in pruned.output
    assert "  sodium" in pruned.output
    assert "sodium" not in listed.output


def test_invalid_config_reports_error(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"install_dir": "/x"}))

    result = CliRunner().invoke(main, ["list", str(path)])

    assert result.exit_code == 1
    assert "E102" in result.output


def test_remove_missing_project(tmp_path):
    result = CliRunner().invoke(main, ["remove", write_config(tmp_path), "sodium"])

    assert result.exit_code == 1
    assert "sodium" in result.output


def test_parse_pins():
    assert _parse_pins(["sodium@abc", "iris@1.6"]) == {"sodium": "abc", "iris": "1.6"}


def test_remove_installed_project(tmp_path):
    seed(tmp_path, present=True)

    result = CliRunner().invoke(main, ["remove", write_config(tmp_path), "sodium"])

    assert result.exit_code == 0
    assert "已卸载 sodium (s1)" in result.output
    assert not (tmp_path / "sodium.jar").exists()


def test_log_file_option(tmp_path):
    log_file = tmp_path / "modkeeper.log"

    result = CliRunner().invoke(
        main, ["--debug", "--log-file", str(log_file), "list", write_config(tmp_path)]
    )
    logger.complete()
    logger.remove()

    assert result.exit_code == 0
    assert "[缓存] 已加载 0 条安装记录" in log_file.read_text(encoding="utf-8")
