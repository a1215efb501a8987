from pathlib import Path

import pytest

from plantuml_bridge.environment import (
    compose,
    find_path_key,
    library_path_variable,
    normalize_executable_path,
)
from plantuml_bridge.locator import ExecutableOrigin, Platform, ResolvedExecutable

from conftest import make_executable


@pytest.fixture
def bundled_dot(tmp_path: Path) -> ResolvedExecutable:
    """A bundled Graphviz layout: <graphviz>/bin/dot next to <graphviz>/lib."""
    dot = make_executable(tmp_path / "graphviz" / "bin" / "dot")
    (tmp_path / "graphviz" / "lib").mkdir()
    return ResolvedExecutable(path=str(dot), origin=ExecutableOrigin.BUNDLED)


def test_no_dot_returns_full_copy() -> None:
    base = {"HOME": "/home/me", "LANG": "C.UTF-8", "PATH": "/usr/bin"}

    env = compose(base, None, Platform.LINUX)

    assert env == base
    assert env is not base


def test_default_base_is_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PLANTUML_BRIDGE_MARKER", "present")

    assert compose(None, None)["PLANTUML_BRIDGE_MARKER"] == "present"


def test_linux_bundled_dot_prepends_library_dir(
    bundled_dot: ResolvedExecutable, tmp_path: Path
) -> None:
    base = {"LD_LIBRARY_PATH": "/opt/lib:/usr/lib", "OTHER": "x"}

    env = compose(base, bundled_dot, Platform.LINUX)

    lib_dir = str(tmp_path / "graphviz" / "lib")
    assert env["LD_LIBRARY_PATH"] == f"{lib_dir}:/opt/lib:/usr/lib"
    assert env["OTHER"] == "x"
    # The caller's mapping is untouched
    assert base["LD_LIBRARY_PATH"] == "/opt/lib:/usr/lib"


def test_linux_compose_is_idempotent(bundled_dot: ResolvedExecutable) -> None:
    once = compose({}, bundled_dot, Platform.LINUX)
    twice = compose(once, bundled_dot, Platform.LINUX)

    assert twice == once
    assert ":" not in once["LD_LIBRARY_PATH"]


def test_darwin_uses_dyld_library_path(bundled_dot: ResolvedExecutable) -> None:
    env = compose({}, bundled_dot, Platform.DARWIN)

    assert env["DYLD_LIBRARY_PATH"].endswith("/graphviz/lib")
    assert "LD_LIBRARY_PATH" not in env


def test_system_dot_leaves_linux_env_alone(tmp_path: Path) -> None:
    dot = make_executable(tmp_path / "bin" / "dot")
    (tmp_path / "lib").mkdir()
    resolved = ResolvedExecutable(path=str(dot), origin=ExecutableOrigin.SYSTEM_PATH)
    base = {"PATH": "/usr/bin"}

    assert compose(base, resolved, Platform.LINUX) == base


def test_bundled_dot_without_lib_dir(tmp_path: Path) -> None:
    dot = make_executable(tmp_path / "graphviz" / "bin" / "dot")
    resolved = ResolvedExecutable(path=str(dot), origin=ExecutableOrigin.BUNDLED)

    assert compose({}, resolved, Platform.LINUX) == {}


def test_windows_extends_existing_path_key() -> None:
    resolved = ResolvedExecutable(
        path="C:\\Program Files\\Graphviz\\bin\\dot.exe",
        origin=ExecutableOrigin.WELL_KNOWN_PATH,
    )
    base = {"Path": "C:\\Windows\\system32;C:\\Windows"}

    env = compose(base, resolved, Platform.WIN32)

    assert "PATH" not in env
    assert env["Path"] == (
        "C:\\Program Files\\Graphviz\\bin;C:\\Windows\\system32;C:\\Windows"
    )


def test_windows_path_is_not_duplicated() -> None:
    resolved = ResolvedExecutable(
        path="C:/Program Files/Graphviz/bin/dot.exe",
        origin=ExecutableOrigin.BUNDLED,
    )
    base = {"PATH": 'C:\\Windows;"c:\\program files\\graphviz\\bin\\"'}

    env = compose(base, resolved, Platform.WIN32)

    assert env == base


def test_windows_without_path_variable() -> None:
    resolved = ResolvedExecutable(
        path="D:\\tools\\dot.exe", origin=ExecutableOrigin.EXPLICIT
    )

    assert compose({}, resolved, Platform.WIN32) == {"PATH": "D:\\tools"}


def test_find_path_key() -> None:
    assert find_path_key({"Path": "x"}) == "Path"
    assert find_path_key({"path": "x", "HOME": "y"}) == "path"
    assert find_path_key({}) == "PATH"


def test_library_path_variable() -> None:
    assert library_path_variable(Platform.LINUX) == "LD_LIBRARY_PATH"
    assert library_path_variable(Platform.DARWIN) == "DYLD_LIBRARY_PATH"
    assert library_path_variable(Platform.WIN32) is None


def test_normalize_executable_path() -> None:
    assert (
        normalize_executable_path("C:/Graphviz/bin/../bin/dot.exe", Platform.WIN32)
        == "C:\\Graphviz\\bin\\dot.exe"
    )
    assert (
        normalize_executable_path("/usr/local/bin/../bin/dot", Platform.LINUX)
        == "/usr/local/bin/dot"
    )
