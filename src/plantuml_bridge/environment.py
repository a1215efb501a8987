"""
Builds the environment handed to the PlantUML subprocess.

The inherited environment is always copied in full. Overrides only ever
prepend to an existing search-path variable so unrelated tooling in the
child process keeps working.
"""

import logging
import ntpath
import os
import posixpath
from types import ModuleType
from typing import Mapping, Optional

from .locator import ExecutableOrigin, Platform, ResolvedExecutable, current_platform

logger = logging.getLogger(__name__)

_LIBRARY_PATH_VARIABLES = {
    Platform.LINUX: "LD_LIBRARY_PATH",
    Platform.DARWIN: "DYLD_LIBRARY_PATH",
}


def _path_module(platform: Platform) -> ModuleType:
    return ntpath if platform == Platform.WIN32 else posixpath


def library_path_variable(platform: Platform) -> Optional[str]:
    """The dynamic-library search variable, or None where PATH is used."""
    return _LIBRARY_PATH_VARIABLES.get(platform)


def normalize_executable_path(path: str, platform: Platform) -> str:
    """
    Return `path` as an absolute path in the platform's separator style.

    PlantUML only invokes Graphviz reliably when given an absolute path.
    """
    pathmod = _path_module(platform)
    if platform == Platform.WIN32:
        path = path.replace("/", "\\")
    return pathmod.normpath(pathmod.abspath(path))


def bundled_library_dir(dot_path: str, platform: Platform) -> str:
    """`<graphviz>/lib` for a bundled `<graphviz>/bin/dot`."""
    pathmod = _path_module(platform)
    return pathmod.normpath(pathmod.join(pathmod.dirname(dot_path), "..", "lib"))


def _normalize_entry(entry: str, platform: Platform) -> str:
    entry = entry.strip().strip('"')
    if not entry:
        return ""
    if platform == Platform.WIN32:
        return ntpath.normcase(ntpath.normpath(entry.replace("/", "\\")))
    return posixpath.normpath(entry)


def _prepend_entry(
    existing: Optional[str], entry: str, platform: Platform
) -> Optional[str]:
    """
    Prepend `entry` to a delimited search path.

    Returns None when the entry is already present, so callers leave the
    variable untouched.
    """
    delimiter = ";" if platform == Platform.WIN32 else ":"
    if not existing:
        return entry

    wanted = _normalize_entry(entry, platform)
    for part in existing.split(delimiter):
        if _normalize_entry(part, platform) == wanted:
            return None
    return f"{entry}{delimiter}{existing}"


def find_path_key(env: Mapping[str, str]) -> str:
    """
    Return the key holding PATH, whatever its casing.

    Windows keys are case-insensitive, but the inherited mapping usually
    preserves the original spelling (often `Path`).
    """
    for key in env:
        if key.upper() == "PATH":
            return key
    return "PATH"


def compose(
    base_env: Optional[Mapping[str, str]],
    resolved_dot: Optional[ResolvedExecutable],
    platform: Optional[Platform] = None,
) -> dict[str, str]:
    """
    Build the subprocess environment for a render call.

    Args:
        base_env: The inherited environment. Defaults to `os.environ`.
        resolved_dot: The dot executable PlantUML will call, if any.
        platform: Target platform. Defaults to the running host.

    Returns:
        A new mapping. It is identical to `base_env` when nothing needs
        injecting. Composition never fails.
    """
    env = dict(os.environ if base_env is None else base_env)
    if resolved_dot is None:
        return env

    platform = platform or current_platform()
    dot_path = normalize_executable_path(resolved_dot.path, platform)

    if platform == Platform.WIN32:
        path_key = find_path_key(env)
        updated = _prepend_entry(env.get(path_key), ntpath.dirname(dot_path), platform)
        if updated is not None:
            env[path_key] = updated
        return env

    if resolved_dot.origin != ExecutableOrigin.BUNDLED:
        return env

    variable = _LIBRARY_PATH_VARIABLES[platform]
    lib_dir = bundled_library_dir(dot_path, platform)
    if not os.path.isdir(lib_dir):
        logger.debug(f"Bundled Graphviz has no library directory at {lib_dir}")
        return env

    updated = _prepend_entry(env.get(variable), lib_dir, platform)
    if updated is not None:
        env[variable] = updated
        logger.debug(f"{variable}={updated}")
    return env
