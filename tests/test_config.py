from pathlib import Path
from typing import Any

import pytest
import yaml
from pydantic import ValidationError
from pytest import MonkeyPatch

from plantuml_bridge import config as config_module

# Bound at import time, before the autouse fixture stubs the module attribute
from plantuml_bridge.config import _locate_config_file


@pytest.fixture(autouse=True)
def reload_all_settings(reload_settings: Any) -> None:
    """
    Every config test starts from the defaults: the knobs we assert on are
    removed from the environment first.
    """
    reload_settings(
        {
            "PLANTUML_DEBUG": "",
            "PLANTUML_HOME": "",
            "DISPATCHER__NAILGUN_JAR": "",
            "DISPATCHER__START_TIMEOUT": "",
            "RUNTIME__VERIFY_TIMEOUT": "",
        }
    )


def _use_yaml(monkeypatch: MonkeyPatch, tmp_path: Path, content: dict) -> None:
    cfg_file = tmp_path / "cfg.yml"
    cfg_file.write_text(yaml.safe_dump(content))
    monkeypatch.setattr(
        config_module, "_locate_config_file", lambda *args, **kwargs: str(cfg_file)
    )


def test_defaults() -> None:
    settings = config_module.get_settings()

    assert settings.PLANTUML_DEBUG is False
    assert settings.PLANTUML_HOME is None
    assert settings.RUNTIME.PACKAGE_PREFIX == "plantuml-bridge"
    assert settings.RUNTIME.VERIFY_TIMEOUT == 5.0
    assert settings.DISPATCHER.NAILGUN_JAR is None
    assert settings.DISPATCHER.HEARTBEAT_INTERVAL == 0.5


def test_load_from_environment_variables(reload_settings: Any) -> None:
    """
    Tests that settings, including nested ones, are loaded from env vars.
    """
    reload_settings(
        {
            "PLANTUML_DEBUG": "true",
            "PLANTUML_HOME": "/opt/plantuml/plantuml.jar",
            "DISPATCHER__NAILGUN_JAR": "/opt/nailgun/nailgun-server.jar",
            "RUNTIME__VERIFY_TIMEOUT": "2.5",
        }
    )
    settings = config_module.get_settings()

    assert settings.PLANTUML_DEBUG is True
    assert settings.PLANTUML_HOME == "/opt/plantuml/plantuml.jar"
    assert settings.DISPATCHER.NAILGUN_JAR == "/opt/nailgun/nailgun-server.jar"
    assert settings.RUNTIME.VERIFY_TIMEOUT == 2.5


def test_load_from_yaml_file(
    reload_settings: Any, monkeypatch: MonkeyPatch, tmp_path: Path
) -> None:
    _use_yaml(
        monkeypatch,
        tmp_path,
        {
            "PLANTUML_DEBUG": True,
            "DISPATCHER": {"HOST": "localhost", "START_TIMEOUT": 30},
        },
    )
    reload_settings({})
    settings = config_module.get_settings()

    assert settings.PLANTUML_DEBUG is True
    assert settings.DISPATCHER.HOST == "localhost"
    assert settings.DISPATCHER.START_TIMEOUT == 30.0
    # Untouched nested values keep their defaults
    assert settings.DISPATCHER.HEARTBEAT_INTERVAL == 0.5


def test_env_overrides_yaml(
    reload_settings: Any, monkeypatch: MonkeyPatch, tmp_path: Path
) -> None:
    _use_yaml(
        monkeypatch,
        tmp_path,
        {"DISPATCHER": {"NAILGUN_JAR": "/yaml/nailgun.jar", "START_TIMEOUT": 30}},
    )
    reload_settings({"DISPATCHER__NAILGUN_JAR": "/env/nailgun.jar"})
    settings = config_module.get_settings()

    assert settings.DISPATCHER.NAILGUN_JAR == "/env/nailgun.jar"
    assert settings.DISPATCHER.START_TIMEOUT == 30.0


def test_broken_yaml_falls_back_to_defaults(
    reload_settings: Any, monkeypatch: MonkeyPatch, tmp_path: Path, capsys: Any
) -> None:
    cfg_file = tmp_path / "cfg.yml"
    cfg_file.write_text("DISPATCHER: [unclosed\n")
    monkeypatch.setattr(
        config_module, "_locate_config_file", lambda *args, **kwargs: str(cfg_file)
    )
    reload_settings({})
    settings = config_module.get_settings()

    assert settings.DISPATCHER.HOST == "127.0.0.1"
    assert "not valid YAML" in capsys.readouterr().out


def test_locate_config_file_searches_parents(
    monkeypatch: MonkeyPatch, tmp_path: Path
) -> None:
    cfg_file = tmp_path / "cfg" / "cfg.yml"
    cfg_file.parent.mkdir()
    cfg_file.write_text("PLANTUML_DEBUG: true\n")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)
    monkeypatch.delenv("PLANTUML_BRIDGE_CONFIG", raising=False)

    found = _locate_config_file("cfg/cfg.yml")
    assert found is not None
    assert Path(found).resolve() == cfg_file.resolve()
    assert _locate_config_file("cfg/cfg.yml", max_depth=1) is None


def test_invalid_setting_raises(reload_settings: Any) -> None:
    """
    Tests that a ValidationError is raised for a value that fails validation.
    """
    with pytest.raises(ValidationError, match="HEARTBEAT_INTERVAL"):
        reload_settings({"DISPATCHER__HEARTBEAT_INTERVAL": "0"})
        config_module.get_settings()


def test_config_file_from_environment(monkeypatch: MonkeyPatch, tmp_path: Path) -> None:
    cfg_file = tmp_path / "elsewhere.yml"
    cfg_file.write_text("PLANTUML_DEBUG: true\n")
    monkeypatch.setenv("PLANTUML_BRIDGE_CONFIG", str(cfg_file))

    assert _locate_config_file("cfg/plantuml_bridge.yml") == str(cfg_file)

    monkeypatch.setenv("PLANTUML_BRIDGE_CONFIG", str(tmp_path / "missing.yml"))
    assert _locate_config_file("cfg/plantuml_bridge.yml") is None


def test_non_mapping_yaml_is_ignored(
    reload_settings: Any, monkeypatch: MonkeyPatch, tmp_path: Path, capsys: Any
) -> None:
    cfg_file = tmp_path / "cfg.yml"
    cfg_file.write_text("- just\n- a list\n")
    monkeypatch.setattr(
        config_module, "_locate_config_file", lambda *args, **kwargs: str(cfg_file)
    )
    reload_settings({})

    assert config_module.get_settings().PLANTUML_DEBUG is False
    assert "expected a mapping" in capsys.readouterr().out


def test_settings_are_loaded_on_demand(reload_settings: Any) -> None:
    reload_settings({"PLANTUML_HOME": "/opt/first.jar"})
    assert config_module.get_settings().PLANTUML_HOME == "/opt/first.jar"

    reload_settings({"PLANTUML_HOME": "/opt/second.jar"})
    assert config_module.get_settings().PLANTUML_HOME == "/opt/second.jar"
    assert not hasattr(config_module, "settings")
