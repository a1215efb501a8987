import os
import stat
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Callable, Optional

import pytest
from pytest import MonkeyPatch

from plantuml_bridge import config as config_module
from plantuml_bridge.runner import ProcessResult, RenderInvocation


@pytest.fixture
def reload_settings(monkeypatch: MonkeyPatch) -> Iterator[Callable[[dict[str, str]], None]]:
    """
    Fixture to force settings to be re-read *after* setting new env vars.

    Modules call `get_settings()` at use time, so clearing its cache is
    enough for them to see the new values.
    """

    def _set_env_and_reload(vars_dict: dict[str, str]) -> None:
        for k, v in vars_dict.items():
            if v == "":
                monkeypatch.delenv(k, raising=False)
            else:
                monkeypatch.setenv(k, v)
        config_module.get_settings.cache_clear()

    yield _set_env_and_reload

    # --- Teardown (after test) ---
    # monkeypatch restores the env after this, so the next call re-reads it.
    config_module.get_settings.cache_clear()


@pytest.fixture(autouse=True)
def no_config_file(monkeypatch: MonkeyPatch) -> Iterator[None]:
    """Keep a developer's cfg/plantuml_bridge.yml out of the tests."""
    monkeypatch.setattr(config_module, "_locate_config_file", lambda *a, **k: None)
    config_module.get_settings.cache_clear()
    yield
    config_module.get_settings.cache_clear()


def make_executable(path: Path, content: str = "#!/bin/sh\n", mode: int = 0o755) -> Path:
    """Create a fake binary at `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    os.chmod(path, mode)
    return path


def is_executable(path: Path) -> bool:
    return bool(os.stat(path).st_mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))


class FakeRunner:
    """Stands in for PlantumlRunner; records invocations and replays results."""

    java_path = "java"

    def __init__(self, *results: ProcessResult):
        self.results = list(results)
        self.invocations: list[RenderInvocation] = []

    def run(self, invocation: RenderInvocation) -> ProcessResult:
        self.invocations.append(invocation)
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]

    def open(self, invocation: RenderInvocation) -> Any:
        raise NotImplementedError


@pytest.fixture
def fake_runner_factory() -> Callable[..., FakeRunner]:
    def _factory(*results: Optional[ProcessResult]) -> FakeRunner:
        if not results:
            results = (ProcessResult(stdout=b"ok", returncode=0),)
        return FakeRunner(*results)

    return _factory
