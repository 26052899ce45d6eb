"""Unit tests for the Configuration Manager."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
import yaml

from extforge.core.config_manager import ConfigManager, ConfigSchema
from extforge.utils.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep EXTFORGE_* variables of the host out of the tests."""
    for name in list(os.environ):
        if name.startswith("EXTFORGE_"):
            monkeypatch.delenv(name)


def test_config_schema_default_values() -> None:
    """Test that ConfigSchema provides correct default values."""
    schema = ConfigSchema()

    assert schema.project["dist_dir"] == "dist"
    assert schema.project["staging_dir"] == ".extforge/staging"
    assert schema.credentials["developer_key"] == "certificates/developer.key"
    assert schema.registry["url"] == ""
    assert schema.upload["version_ceiling"] == 10
    assert schema.upload["retry_delay"] == 1.0
    assert schema.upload["max_attempts"] == 120
    assert schema.sdk["command"] == "dt-sdk"
    assert schema.logging["level"] == "INFO"


@pytest.mark.parametrize(
    "upload, message",
    [
        ({"version_ceiling": 0}, "version_ceiling"),
        ({"max_attempts": "many"}, "max_attempts"),
        ({"retry_delay": -1}, "retry_delay"),
    ],
)
def test_config_schema_validates_upload(upload, message: str) -> None:
    values = ConfigSchema().upload
    values.update(upload)
    with pytest.raises(ValueError, match=message):
        ConfigSchema(upload=values)


def test_config_schema_validates_logging_format() -> None:
    values = ConfigSchema().logging
    values["format"] = "xml"
    with pytest.raises(ValueError, match="logging.format"):
        ConfigSchema(logging=values)


def test_config_manager_without_file(tmp_path: Path) -> None:
    manager = ConfigManager(config_path=tmp_path / "missing.yaml")
    manager.initialize()

    assert manager.initialized
    assert manager.get("upload.version_ceiling") == 10
    assert manager.status()["loaded_from_file"] is False


def test_config_manager_yaml_file(config_file: Path) -> None:
    manager = ConfigManager(config_path=config_file)
    manager.initialize()

    assert manager.get("upload.retry_delay") == 0.0
    assert manager.get("upload.max_attempts") == 5
    assert manager.get("upload.version_ceiling") == 10
    assert manager.get("logging.console.enabled") is False
    assert manager.get("logging.file.enabled") is False
    assert manager.status()["config_file"] == str(config_file)


def test_config_manager_json_file(tmp_path: Path) -> None:
    config_file = tmp_path / "extforge.json"
    config_file.write_text(json.dumps({"registry": {"url": "https://registry.example", "token": "t"}}))

    manager = ConfigManager(config_path=config_file)
    manager.initialize()

    assert manager.get("registry.url") == "https://registry.example"
    assert manager.get("registry.timeout") == 30.0


def test_config_manager_invalid_yaml(tmp_path: Path) -> None:
    config_file = tmp_path / "extforge.yaml"
    config_file.write_text("upload: [unclosed")
    with pytest.raises(ConfigurationError, match="Error parsing"):
        ConfigManager(config_path=config_file).initialize()


def test_config_manager_unsupported_format(tmp_path: Path) -> None:
    config_file = tmp_path / "extforge.ini"
    config_file.write_text("[upload]")
    with pytest.raises(ConfigurationError, match="Unsupported"):
        ConfigManager(config_path=config_file).initialize()


def test_config_manager_non_mapping_file(tmp_path: Path) -> None:
    config_file = tmp_path / "extforge.yaml"
    config_file.write_text("- a\n- b\n")
    with pytest.raises(ConfigurationError, match="mapping"):
        ConfigManager(config_path=config_file).initialize()


def test_config_manager_invalid_values(tmp_path: Path) -> None:
    config_file = tmp_path / "extforge.yaml"
    config_file.write_text(yaml.safe_dump({"upload": {"version_ceiling": -3}}))
    with pytest.raises(ConfigurationError, match="Invalid configuration"):
        ConfigManager(config_path=config_file).initialize()


def test_config_manager_environment_variables(config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXTFORGE_REGISTRY__URL", "https://env.example")
    monkeypatch.setenv("EXTFORGE_REGISTRY__VERIFY_SSL", "false")
    monkeypatch.setenv("EXTFORGE_UPLOAD__MAX_ATTEMPTS", "7")

    manager = ConfigManager(config_path=config_file)
    manager.initialize()

    assert manager.get("registry.url") == "https://env.example"
    assert manager.get("registry.verify_ssl") is False
    assert manager.get("upload.max_attempts") == 7
    assert manager.status()["env_vars_applied"] == 3


def test_config_manager_overrides_win(config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXTFORGE_LOGGING__LEVEL", "WARNING")
    manager = ConfigManager(config_path=config_file, overrides={"logging.level": "ERROR"})
    manager.initialize()
    assert manager.get("logging.level") == "ERROR"


def test_config_manager_get_before_initialize() -> None:
    with pytest.raises(ConfigurationError):
        ConfigManager().get("upload.retry_delay")


def test_config_manager_get_default(config_file: Path) -> None:
    manager = ConfigManager(config_path=config_file)
    manager.initialize()
    assert manager.get("registry.missing", "fallback") == "fallback"
    assert manager.get("upload.retry_delay.nested", 3) == 3


def test_config_manager_set(config_file: Path) -> None:
    manager = ConfigManager(config_path=config_file)
    manager.initialize()

    manager.set("upload.version_ceiling", 3)
    assert manager.get("upload.version_ceiling") == 3

    with pytest.raises(ConfigurationError):
        manager.set("upload.version_ceiling", 0)
    assert manager.get("upload.version_ceiling") == 3


def test_as_dict_is_a_copy(config_file: Path) -> None:
    manager = ConfigManager(config_path=config_file)
    manager.initialize()
    snapshot = manager.as_dict()
    snapshot["upload"]["max_attempts"] = 99
    assert manager.get("upload.max_attempts") == 5


def test_config_manager_non_utf8_file(tmp_path: Path) -> None:
    config_file = tmp_path / "extforge.yaml"
    config_file.write_bytes(b"registry:\n  url: https://caf\xe9.example\n")
    with pytest.raises(ConfigurationError, match="Error parsing"):
        ConfigManager(config_path=config_file).initialize()


def test_config_manager_unreadable_file(tmp_path: Path) -> None:
    config_dir = tmp_path / "extforge.yaml"
    config_dir.mkdir()
    with pytest.raises(ConfigurationError, match="Error reading"):
        ConfigManager(config_path=config_dir).initialize()
