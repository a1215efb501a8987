"""
Settings for the bridge.

Values come from, highest priority first:

1.  Environment variables. Nested fields use `__`, e.g.
    `DISPATCHER__NAILGUN_JAR=/opt/nailgun/nailgun-server.jar`.
2.  A YAML file: `PLANTUML_BRIDGE_CONFIG` if set, else the first
    `cfg/plantuml_bridge.yml` found walking up from the working directory.
3.  The model defaults below.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional, cast

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

CONFIG_FILE = "cfg/plantuml_bridge.yml"
CONFIG_FILE_ENV = "PLANTUML_BRIDGE_CONFIG"


# --- YAML source ---
def _locate_config_file(cfg_file: str, max_depth: int = 5) -> Optional[str]:
    """Walk up from the working directory, at most `max_depth` levels."""
    explicit = os.environ.get(CONFIG_FILE_ENV)
    if explicit:
        return explicit if Path(explicit).is_file() else None

    directory = Path.cwd()
    for _ in range(max_depth):
        candidate = directory / cfg_file
        if candidate.is_file():
            return str(candidate)
        if directory.parent == directory:
            break
        directory = directory.parent
    return None


def _yaml_config_settings_source() -> dict[str, Any]:
    """
    Read the YAML settings file, if there is one.

    Logging is not configured yet when settings load, so problems are
    printed. A broken file is skipped rather than fatal.
    """
    path = _locate_config_file(CONFIG_FILE)
    if path is None:
        return {}

    try:
        with open(path, encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
    except yaml.YAMLError as e:
        print(f"WARNING: Ignoring {path}, it is not valid YAML: {e}")
        return {}
    except OSError as e:
        print(f"WARNING: Ignoring {path}, it could not be read: {e}")
        return {}

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        print(f"WARNING: Ignoring {path}, expected a mapping at the top level")
        return {}
    return loaded


# --- Schemas ---
class RuntimeSettings(BaseModel):
    """Executable discovery."""

    # Distribution prefix of the optional jre/graphviz runtime packages
    PACKAGE_PREFIX: str = "plantuml-bridge"
    # Wall-clock limit for the `java -version` / `dot -V` probes
    VERIFY_TIMEOUT: float = Field(5.0, gt=0)
    # Wall-clock limit for the `which` / `where` helper
    LOOKUP_TIMEOUT: float = Field(10.0, gt=0)


class DispatcherSettings(BaseModel):
    """The persistent Nailgun dispatcher."""

    NAILGUN_JAR: Optional[str] = None
    HOST: str = "127.0.0.1"
    START_TIMEOUT: float = Field(15.0, gt=0)
    HEARTBEAT_INTERVAL: float = Field(0.5, gt=0)


class AppSettings(BaseSettings):
    # Turns on DEBUG console logging in setup_logging()
    PLANTUML_DEBUG: bool = False
    # Replaces the packaged plantuml.jar
    PLANTUML_HOME: Optional[str] = None

    RUNTIME: RuntimeSettings = RuntimeSettings()
    DISPATCHER: DispatcherSettings = DispatcherSettings()

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",  # The YAML file may carry keys for other tools
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Earlier sources win: env, then YAML, then constructor arguments
        return (
            env_settings,
            cast(PydanticBaseSettingsSource, _yaml_config_settings_source),
            init_settings,
        )


@lru_cache
def get_settings() -> AppSettings:
    """
    Load and validate settings once per process.

    Call `get_settings.cache_clear()` to pick up changed environment
    variables.

    Raises:
        ValidationError: A value failed validation. The details are
            printed before re-raising.
    """
    try:
        return AppSettings()
    except ValidationError as e:
        print("--- plantuml_bridge: invalid configuration ---")
        print(str(e))
        print(f"Check the environment and {CONFIG_FILE} (or ${CONFIG_FILE_ENV}).")
        raise
