"""
Locates the Java runtime and the Graphviz `dot` executable.

Resolution walks an ordered list of tiers and the first match wins:

1.  An explicit path supplied by the caller (advisory, never fatal).
2.  A bundled optional runtime package for the current platform/arch.
3.  Well-known installation paths (JAVA_HOME, Homebrew, Program Files...).
4.  The system PATH, via `which` / `where`.

Nothing is cached: every call re-stats the filesystem, so a runtime
package installed or removed while the host process runs is picked up.
"""

import importlib
import importlib.util
import logging
import ntpath
import os
import platform as host_platform
import posixpath
import stat
import subprocess
import sys
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict

from .config import get_settings

logger = logging.getLogger(__name__)


class Platform(str, Enum):
    WIN32 = "win32"
    DARWIN = "darwin"
    LINUX = "linux"


class Arch(str, Enum):
    X64 = "x64"
    ARM64 = "arm64"


class ExecutableKind(str, Enum):
    JAVA = "java"
    DOT = "dot"


class ExecutableOrigin(str, Enum):
    EXPLICIT = "explicit"
    BUNDLED = "bundled"
    WELL_KNOWN_PATH = "well-known-path"
    SYSTEM_PATH = "system-path"


_MACHINE_ALIASES = {
    "x86_64": Arch.X64,
    "amd64": Arch.X64,
    "x64": Arch.X64,
    "arm64": Arch.ARM64,
    "aarch64": Arch.ARM64,
}


def current_platform() -> Platform:
    """Map `sys.platform` onto a Platform. Other POSIX hosts count as linux."""
    if sys.platform == "win32":
        return Platform.WIN32
    if sys.platform == "darwin":
        return Platform.DARWIN
    return Platform.LINUX


def current_arch() -> Optional[Arch]:
    """Map `platform.machine()` onto an Arch, or None if unrecognised."""
    return _MACHINE_ALIASES.get(host_platform.machine().lower())


class ResolutionRequest(BaseModel):
    """Immutable input to a single resolution."""

    model_config = ConfigDict(frozen=True)

    explicit_path: Optional[str] = None
    platform: Platform
    arch: Optional[Arch] = None

    @classmethod
    def for_host(cls, explicit_path: Optional[str] = None) -> "ResolutionRequest":
        return cls(
            explicit_path=explicit_path,
            platform=current_platform(),
            arch=current_arch(),
        )


class ResolvedExecutable(BaseModel):
    """An executable that existed on disk when it was resolved."""

    model_config = ConfigDict(frozen=True)

    path: str
    origin: ExecutableOrigin


# --- Filesystem helpers ---
# Every tier goes through these two, so tests can instrument them.


def _path_exists(path: str) -> bool:
    return os.path.exists(path)


def _is_executable(path: str, platform: Platform) -> bool:
    """
    True if `path` exists and can be executed.

    Windows does not track execute permission on the filesystem, so
    existence is sufficient there.
    """
    if not _path_exists(path):
        return False
    if platform == Platform.WIN32:
        return True
    try:
        return bool(os.stat(path).st_mode & 0o111)
    except OSError:
        return False


def _is_usable(kind: ExecutableKind, path: str, platform: Platform) -> bool:
    if kind == ExecutableKind.DOT:
        return _is_executable(path, platform)
    return _path_exists(path)


def _executable_name(kind: ExecutableKind, platform: Platform) -> str:
    name = kind.value
    return f"{name}.exe" if platform == Platform.WIN32 else name


def ensure_executable(path: str) -> None:
    """
    Add the execute bits to a bundled binary if they are missing.

    Wheels and archives can drop the mode bits of packaged files. Failures
    are logged and ignored: the file may already be executable.
    """
    try:
        mode = os.stat(path).st_mode
        wanted = mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
        if wanted != mode:
            os.chmod(path, wanted)
            logger.debug(f"Marked {path} as executable")
    except OSError as e:
        logger.debug(f"Could not mark {path} as executable: {e}")


# --- Tier 2: bundled runtime packages ---

_RUNTIME_COMPONENTS = {
    ExecutableKind.JAVA: "jre",
    ExecutableKind.DOT: "graphviz",
}

_SUPPORTED_RUNTIME_TARGETS = frozenset(
    {
        (Platform.WIN32, Arch.X64),
        (Platform.DARWIN, Arch.X64),
        (Platform.DARWIN, Arch.ARM64),
        (Platform.LINUX, Arch.X64),
    }
)


def runtime_package_name(
    kind: ExecutableKind, platform: Platform, arch: Optional[Arch]
) -> Optional[str]:
    """
    Return the distribution name of the bundled runtime for a target.

    Example: ``plantuml-bridge-graphviz-darwin-arm64``. Unsupported
    platform/arch pairs have no package and yield None.
    """
    if (platform, arch) not in _SUPPORTED_RUNTIME_TARGETS:
        return None
    prefix = get_settings().RUNTIME.PACKAGE_PREFIX
    return f"{prefix}-{_RUNTIME_COMPONENTS[kind]}-{platform.value}-{arch.value}"


def locate_runtime_package(package_name: str) -> Optional[Path]:
    """Find the installed directory of a runtime package, if any."""
    module_name = package_name.replace("-", "_")
    # Packages may be installed or removed while we run.
    importlib.invalidate_caches()
    try:
        spec = importlib.util.find_spec(module_name)
    except (ImportError, ValueError) as e:
        logger.debug(f"Runtime package {module_name} lookup failed: {e}")
        return None

    if spec is None:
        return None
    if spec.submodule_search_locations:
        return Path(list(spec.submodule_search_locations)[0])
    if spec.origin:
        return Path(spec.origin).parent
    return None


def _bundled_relative_path(kind: ExecutableKind, platform: Platform) -> tuple[str, ...]:
    return (
        _RUNTIME_COMPONENTS[kind],
        "bin",
        _executable_name(kind, platform),
    )


# --- Tier 3: well-known installation paths ---


def well_known_paths(
    kind: ExecutableKind,
    platform: Platform,
    environ: Optional[dict[str, str]] = None,
) -> list[str]:
    """Conventional install locations, in the order they are checked."""
    env = os.environ if environ is None else environ
    pathmod = ntpath if platform == Platform.WIN32 else posixpath

    if kind == ExecutableKind.JAVA:
        java_home = env.get("JAVA_HOME")
        if not java_home:
            return []
        return [pathmod.join(java_home, "bin", _executable_name(kind, platform))]

    if platform == Platform.DARWIN:
        return [
            "/opt/homebrew/bin/dot",  # Homebrew on Apple Silicon
            "/usr/local/bin/dot",  # Homebrew on Intel
            "/opt/local/bin/dot",  # MacPorts
        ]
    if platform == Platform.WIN32:
        program_files = env.get("ProgramFiles") or "C:\\Program Files"
        program_files_x86 = env.get("ProgramFiles(x86)") or "C:\\Program Files (x86)"
        return [
            ntpath.join(program_files, "Graphviz", "bin", "dot.exe"),
            ntpath.join(program_files_x86, "Graphviz", "bin", "dot.exe"),
            "C:\\ProgramData\\chocolatey\\bin\\dot.exe",
        ]
    return ["/usr/bin/dot", "/usr/local/bin/dot", "/opt/local/bin/dot"]


# --- Tier 4: system PATH ---


def find_in_system_path(command: str, platform: Platform) -> Optional[str]:
    """
    Ask `which` (POSIX) or `where` (Windows) for a command.

    Only the first reported line is used, and it must exist on disk.
    """
    lookup = "where" if platform == Platform.WIN32 else "which"
    timeout = get_settings().RUNTIME.LOOKUP_TIMEOUT
    try:
        result = subprocess.run(
            [lookup, command],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"'{lookup} {command}' did not answer within {timeout}s")
        return None
    except OSError as e:
        logger.debug(f"'{lookup}' is not available: {e}")
        return None

    if result.returncode != 0:
        return None

    lines = result.stdout.strip().splitlines()
    if not lines:
        return None
    candidate = lines[0].strip()
    if candidate and _path_exists(candidate):
        return candidate
    return None


# --- The tiers ---


def _from_explicit_hint(
    kind: ExecutableKind, request: ResolutionRequest
) -> Optional[ResolvedExecutable]:
    if not request.explicit_path:
        return None
    candidate = os.path.abspath(os.path.expanduser(request.explicit_path))
    if _is_usable(kind, candidate, request.platform):
        return ResolvedExecutable(path=candidate, origin=ExecutableOrigin.EXPLICIT)
    logger.debug(f"Explicit {kind.value} path {candidate} is not usable, falling back")
    return None


def _from_bundled_package(
    kind: ExecutableKind, request: ResolutionRequest
) -> Optional[ResolvedExecutable]:
    package_name = runtime_package_name(kind, request.platform, request.arch)
    if package_name is None:
        return None

    package_dir = locate_runtime_package(package_name)
    if package_dir is None:
        return None

    candidate = str(package_dir.joinpath(*_bundled_relative_path(kind, request.platform)))
    if not _path_exists(candidate):
        logger.debug(f"{package_name} is installed but {candidate} is missing")
        return None

    if request.platform != Platform.WIN32:
        ensure_executable(candidate)
    return ResolvedExecutable(path=candidate, origin=ExecutableOrigin.BUNDLED)


def _from_well_known_paths(
    kind: ExecutableKind, request: ResolutionRequest
) -> Optional[ResolvedExecutable]:
    for candidate in well_known_paths(kind, request.platform):
        if _is_usable(kind, candidate, request.platform):
            return ResolvedExecutable(
                path=candidate, origin=ExecutableOrigin.WELL_KNOWN_PATH
            )
    return None


def _from_system_path(
    kind: ExecutableKind, request: ResolutionRequest
) -> Optional[ResolvedExecutable]:
    found = find_in_system_path(kind.value, request.platform)
    if found is None:
        return None
    return ResolvedExecutable(path=found, origin=ExecutableOrigin.SYSTEM_PATH)


_Tier = Callable[[ExecutableKind, ResolutionRequest], Optional[ResolvedExecutable]]

_TIERS: tuple[_Tier, ...] = (
    _from_explicit_hint,
    _from_bundled_package,
    _from_well_known_paths,
    _from_system_path,
)


def resolve(
    kind: ExecutableKind, request: ResolutionRequest
) -> Optional[ResolvedExecutable]:
    """
    Resolve an executable through the fallback tiers.

    Args:
        kind: Which executable to look for.
        request: The explicit hint and the target platform/arch.

    Returns:
        The first match, or None when every tier came up empty. Absence
        is not an error: callers decide whether it is fatal.
    """
    for tier in _TIERS:
        resolved = tier(kind, request)
        if resolved is not None:
            logger.debug(
                f"Resolved {kind.value} to {resolved.path} ({resolved.origin.value})"
            )
            return resolved

    logger.debug(f"No {kind.value} executable found for {request.platform.value}")
    return None


def resolve_java(request: ResolutionRequest) -> Optional[ResolvedExecutable]:
    return resolve(ExecutableKind.JAVA, request)


def resolve_dot(request: ResolutionRequest) -> Optional[ResolvedExecutable]:
    return resolve(ExecutableKind.DOT, request)


# --- Verification probes ---


def _probe(command: list[str], timeout: Optional[float]) -> bool:
    """
    Run a version probe.

    It passes when the exit code is zero or the command printed anything.
    `java -version` and `dot -V` both report on stderr, and some `dot`
    builds exit non-zero after printing their version.
    """
    if timeout is None:
        timeout = get_settings().RUNTIME.VERIFY_TIMEOUT
    try:
        # subprocess.run kills the child before raising TimeoutExpired
        result = subprocess.run(
            command,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"'{' '.join(command)}' timed out after {timeout}s")
        return False
    except OSError as e:
        logger.debug(f"'{' '.join(command)}' could not be started: {e}")
        return False

    return result.returncode == 0 or bool(result.stdout) or bool(result.stderr)


def verify_java(java_path: str, timeout: Optional[float] = None) -> bool:
    """Check that a Java executable actually runs."""
    return _probe([java_path, "-version"], timeout)


def verify_dot(dot_path: str, timeout: Optional[float] = None) -> bool:
    """Check that a Graphviz dot executable actually runs."""
    return _probe([dot_path, "-V"], timeout)
