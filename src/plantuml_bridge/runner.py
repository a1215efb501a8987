"""
Runs the PlantUML JAR.

Two interchangeable backends exist:

-   `SpawnBackend` starts a fresh JVM for every call.
-   `DispatcherBackend` starts a Nailgun server once, with PlantUML on its
    classpath, and dispatches each call over a loopback socket.

`PlantumlRunner` owns the choice. Create one per application: once the
dispatcher is active it stays active for the life of the runner.
"""

import atexit
import io
import logging
import os
import queue
import re
import subprocess
import threading
import time
from enum import Enum
from pathlib import Path
from typing import IO, Optional, Union

from pydantic import BaseModel

from .config import get_settings
from .environment import compose
from .locator import ResolutionRequest, resolve_dot, resolve_java
from .nailgun import NailgunConnection, NailgunError

logger = logging.getLogger(__name__)

# --- CONFIGURATION ---
INCLUDED_PLANTUML_JAR = Path(__file__).parent / "vendor" / "plantuml.jar"

JVM_OPTIONS = [
    "-Djava.awt.headless=true",
    "-Dfile.encoding=UTF-8",
    "-Duser.language=en",
    "-Duser.country=US",
]

PLANTUML_MAIN_CLASS = "net.sourceforge.plantuml.Run"
NAILGUN_SERVER_CLASS = "com.facebook.nailgun.NGServer"

# e.g. "NGServer 1.0.0 started on address localhost/127.0.0.1 port 41523."
_READY_BANNER = re.compile(r"NGServer\b.*\bport (\d+)")

# PlantUML's "could not guess the diagram type" notice; exits 200 but
# still renders.
_KNOWN_WARNINGS = (
    re.compile(r"^ERROR\s*\d+\s*Syntax Error\? \(Assumed diagram type:[^)]*\)\s*$"),
)


# `!include foo.iuml`, `!includesub lib.iuml!PART`, ...; `<stdlib>` targets
# are left alone by the pattern itself
_INCLUDE_LINE = re.compile(
    r"^([ \t]*!include(?:sub|_many|_once)?[ \t]+)([^\s<][^\r\n]*?)([ \t\r]*)$",
    re.MULTILINE,
)


def absolutize_includes(payload: bytes, base_dir: str) -> bytes:
    """
    Rewrite relative `!include` targets in `payload` against `base_dir`.

    The Nailgun server runs PlantUML in its own working directory, whatever
    directory the call asks for, so relative includes are made absolute
    before dispatch. URLs and absolute paths are kept as written. The
    payload is handled as latin-1, which round-trips any ASCII-compatible
    encoding byte for byte.
    """
    text = payload.decode("latin-1")
    base = os.fsencode(os.path.abspath(base_dir)).decode("latin-1")

    def _absolute(match: "re.Match[str]") -> str:
        target = match.group(2)
        if "://" in target or os.path.isabs(target):
            return match.group(0)
        return match.group(1) + os.path.join(base, target) + match.group(3)

    return _INCLUDE_LINE.sub(_absolute, text).encode("latin-1")


class OutputReadError(IOError):
    """Reading the renderer's output failed after it was started."""


class DispatcherStartError(RuntimeError):
    """The persistent Nailgun dispatcher could not be brought up."""


class ExecutionStrategy(str, Enum):
    SPAWN_PER_CALL = "spawn-per-call"
    PERSISTENT_DISPATCHER = "persistent-dispatcher"


class DispatcherState(str, Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    READY = "ready"


class RenderInvocation(BaseModel):
    """Everything one render call hands to a backend."""

    argv: list[str]
    cwd: Optional[str] = None
    env: Optional[dict[str, str]] = None
    stdin_payload: bytes = b""


class ProcessResult(BaseModel):
    stdout: bytes = b""
    stderr: bytes = b""
    returncode: int


class RunnerConfig(BaseModel):
    """Chosen once, when the application builds its runner."""

    strategy: ExecutionStrategy = ExecutionStrategy.SPAWN_PER_CALL
    # Advisory: falls back to the locator tiers if unusable
    java_path: Optional[str] = None
    jar_path: Optional[str] = None
    nailgun_jar: Optional[str] = None


def default_jar_path() -> str:
    """PLANTUML_HOME if set, otherwise the jar shipped in the package."""
    return get_settings().PLANTUML_HOME or str(INCLUDED_PLANTUML_JAR)


def resolve_java_command(hint: Optional[str] = None) -> str:
    """
    Resolve the Java executable, or fall back to the literal "java".

    With the fallback, a missing runtime surfaces as the OS's own
    "not found" error at spawn time.
    """
    resolved = resolve_java(ResolutionRequest.for_host(hint))
    if resolved is None:
        logger.warning("No Java runtime found; falling back to 'java' on PATH")
        return "java"
    return resolved.path


def build_java_command(
    java_path: str, jar_path: str, argv: list[str], cwd: Optional[str] = None
) -> list[str]:
    """The full command line for one spawned PlantUML run."""
    include_path = cwd or os.getcwd()
    return [
        java_path,
        f"-Dplantuml.include.path={include_path}",
        *JVM_OPTIONS,
        "-jar",
        jar_path,
        *argv,
    ]


def has_render_error(result: ProcessResult) -> bool:
    """
    Decide whether a finished render failed.

    A zero exit code is success. A non-zero exit code is a failure unless
    stderr holds nothing but a notice from the known-warning allow-list.
    This is approximate: PlantUML does not report errors in a structured
    way, so false positives and negatives are possible.
    """
    if result.returncode == 0:
        return False
    stderr = result.stderr.decode("utf-8", errors="replace").strip()
    if stderr and any(pattern.match(stderr) for pattern in _KNOWN_WARNINGS):
        return False
    return True


class CompletedStream:
    """A finished dispatcher call, readable like a `subprocess.Popen`."""

    def __init__(self, result: ProcessResult):
        self.stdout: IO[bytes] = io.BytesIO(result.stdout)
        self.stderr: IO[bytes] = io.BytesIO(result.stderr)
        self.returncode = result.returncode

    def poll(self) -> int:
        return self.returncode

    def wait(self, timeout: Optional[float] = None) -> int:
        return self.returncode


class SpawnedStream:
    """
    A live spawned render.

    `stdout` is the process pipe and can be read while PlantUML works.
    stderr is drained on a background thread so its pipe never fills; it
    becomes readable once the process has exited.
    """

    def __init__(self, process: subprocess.Popen):
        self.process = process
        self.stdin = process.stdin
        self.stdout: IO[bytes] = process.stdout
        self._stderr_chunks: list[bytes] = []
        self._drain = threading.Thread(target=self._drain_stderr, daemon=True)
        self._drain.start()

    def _drain_stderr(self) -> None:
        for chunk in iter(lambda: self.process.stderr.read(65536), b""):
            self._stderr_chunks.append(chunk)
        self.process.stderr.close()

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def stderr_bytes(self) -> bytes:
        """Everything PlantUML wrote to stderr. Waits for the process to exit."""
        self.wait()
        return b"".join(self._stderr_chunks)

    @property
    def stderr(self) -> IO[bytes]:
        return io.BytesIO(self.stderr_bytes)

    def poll(self) -> Optional[int]:
        return self.process.poll()

    def wait(self, timeout: Optional[float] = None) -> int:
        code = self.process.wait(timeout=timeout)
        self._drain.join(timeout)
        return code


RenderStream = Union[SpawnedStream, CompletedStream]


# --- Backend A: spawn per call ---


class SpawnBackend:
    def __init__(self, java_path: str, jar_path: str):
        self.java_path = java_path
        self.jar_path = jar_path

    def _popen(self, invocation: RenderInvocation) -> subprocess.Popen:
        command = build_java_command(
            self.java_path, self.jar_path, invocation.argv, invocation.cwd
        )
        logger.debug(f"Spawning: {' '.join(command)}")
        # A missing executable raises FileNotFoundError here; it is not
        # translated.
        return subprocess.Popen(
            command,
            cwd=invocation.cwd,
            env=invocation.env,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )

    def open(self, invocation: RenderInvocation) -> SpawnedStream:
        """
        Start a render and return it as a `SpawnedStream`.

        The payload is written to stdin from a helper thread, so the caller
        can read stdout while the input is still being consumed.
        """
        process = self._popen(invocation)

        def _feed_stdin() -> None:
            try:
                if invocation.stdin_payload:
                    process.stdin.write(invocation.stdin_payload)
                process.stdin.close()
            except BrokenPipeError:
                logger.debug("PlantUML closed stdin before the payload was written")

        threading.Thread(target=_feed_stdin, daemon=True).start()
        return SpawnedStream(process)

    def run(self, invocation: RenderInvocation) -> ProcessResult:
        process = self._popen(invocation)
        try:
            stdout, stderr = process.communicate(input=invocation.stdin_payload)
        except OSError as e:
            process.kill()
            process.wait()
            raise OutputReadError(f"error while reading plantuml output: {e}") from e
        return ProcessResult(stdout=stdout, stderr=stderr, returncode=process.returncode)


# --- Backend B: persistent Nailgun dispatcher ---


class DispatcherBackend:
    """
    A Nailgun server with PlantUML preloaded on its classpath.

    The server announces its port on stdout once its socket is listening.
    That banner is the readiness signal: `start()` blocks until it
    arrives, the server dies, or the start timeout runs out.
    """

    def __init__(
        self,
        java_path: str,
        jar_path: str,
        nailgun_jar: Optional[str] = None,
    ):
        dispatcher_settings = get_settings().DISPATCHER
        self.java_path = java_path
        self.jar_path = jar_path
        self.nailgun_jar = nailgun_jar or dispatcher_settings.NAILGUN_JAR
        self.host = dispatcher_settings.HOST
        self.start_timeout = dispatcher_settings.START_TIMEOUT
        self.heartbeat_interval = dispatcher_settings.HEARTBEAT_INTERVAL
        self.port: Optional[int] = None
        self._process: Optional[subprocess.Popen] = None
        self._banner_seen = threading.Event()

    def build_command(self, include_path: Optional[str] = None) -> list[str]:
        classpath = os.pathsep.join([str(self.nailgun_jar), self.jar_path])
        return [
            self.java_path,
            f"-Dplantuml.include.path={include_path or os.getcwd()}",
            *JVM_OPTIONS,
            "-cp",
            classpath,
            NAILGUN_SERVER_CLASS,
            f"{self.host}:0",
        ]

    def _pump_output(self, stream: IO[str], lines: "queue.Queue[Optional[str]]") -> None:
        for line in stream:
            line = line.rstrip()
            logger.debug(f"[nailgun] {line}")
            if not self._banner_seen.is_set():
                lines.put(line)
        lines.put(None)

    def start(self, env: Optional[dict[str, str]] = None) -> int:
        """
        Launch the server and wait until it is ready.

        Returns:
            The loopback port the server listens on.

        Raises:
            DispatcherStartError: If no Nailgun jar is configured, the
                server cannot be launched, exits early, or stays silent
                past the start timeout.
        """
        if not self.nailgun_jar:
            raise DispatcherStartError(
                "No Nailgun server jar configured (set DISPATCHER__NAILGUN_JAR)"
            )

        command = self.build_command()
        logger.info(f"Starting Nailgun dispatcher: {' '.join(command)}")
        try:
            self._process = subprocess.Popen(
                command,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as e:
            raise DispatcherStartError(f"dispatcher failed to start: {e}") from e

        lines: "queue.Queue[Optional[str]]" = queue.Queue()
        threading.Thread(
            target=self._pump_output, args=(self._process.stdout, lines), daemon=True
        ).start()

        deadline = time.monotonic() + self.start_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.shutdown()
                raise DispatcherStartError(
                    f"dispatcher failed to start: no ready banner within "
                    f"{self.start_timeout}s"
                )
            try:
                line = lines.get(timeout=remaining)
            except queue.Empty:
                continue
            if line is None:
                code = self._process.wait()
                raise DispatcherStartError(
                    f"dispatcher failed to start: server exited with code {code}"
                )
            match = _READY_BANNER.search(line)
            if match:
                self._banner_seen.set()
                self.port = int(match.group(1))
                break

        atexit.register(self.shutdown)
        logger.info(f"Nailgun dispatcher ready on {self.host}:{self.port}")
        return self.port

    def run(self, invocation: RenderInvocation) -> ProcessResult:
        if self.port is None:
            raise DispatcherStartError("Nailgun dispatcher is not running")

        cwd = invocation.cwd or os.getcwd()
        env = dict(os.environ) if invocation.env is None else invocation.env
        payload = invocation.stdin_payload
        if invocation.cwd:
            payload = absolutize_includes(payload, invocation.cwd)
        with NailgunConnection(self.host, self.port, self.heartbeat_interval) as conn:
            try:
                returncode, stdout, stderr = conn.execute(
                    PLANTUML_MAIN_CLASS,
                    invocation.argv,
                    cwd,
                    env,
                    payload,
                )
            except (NailgunError, OSError) as e:
                raise OutputReadError(f"error while reading plantuml output: {e}") from e
        return ProcessResult(stdout=stdout, stderr=stderr, returncode=returncode)

    def shutdown(self) -> None:
        if self._process is None or self._process.poll() is not None:
            return
        logger.debug("Stopping Nailgun dispatcher")
        self._process.terminate()
        try:
            self._process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self._process.kill()
            self._process.wait()


# --- The runner ---


class PlantumlRunner:
    """
    Runs PlantUML with the strategy chosen at startup.

    The dispatcher state only moves forward: UNINITIALIZED -> STARTING ->
    READY. Until it is READY every call spawns a new JVM. A failed start
    drops back to UNINITIALIZED so spawning keeps working.
    """

    def __init__(self, config: Optional[RunnerConfig] = None):
        self.config = config or RunnerConfig()
        self.java_path = resolve_java_command(self.config.java_path)
        self.jar_path = self.config.jar_path or default_jar_path()
        self._spawn = SpawnBackend(self.java_path, self.jar_path)
        self._dispatcher: Optional[DispatcherBackend] = None
        self._state = DispatcherState.UNINITIALIZED
        self._lock = threading.Lock()

        if self.config.strategy == ExecutionStrategy.PERSISTENT_DISPATCHER:
            self.activate_dispatcher()

    @property
    def state(self) -> DispatcherState:
        return self._state

    @property
    def strategy(self) -> ExecutionStrategy:
        if self._state == DispatcherState.READY:
            return ExecutionStrategy.PERSISTENT_DISPATCHER
        return ExecutionStrategy.SPAWN_PER_CALL

    def activate_dispatcher(
        self, env: Optional[dict[str, str]] = None
    ) -> DispatcherBackend:
        """
        Switch this runner to the persistent dispatcher.

        Idempotent: later calls return the running dispatcher. The server
        inherits `env`, by default the composed environment for the
        resolved dot, because PlantUML launches Graphviz from inside the
        server's JVM.
        """
        with self._lock:
            if self._state == DispatcherState.READY and self._dispatcher is not None:
                return self._dispatcher

            self._state = DispatcherState.STARTING
            if env is None:
                env = compose(None, resolve_dot(ResolutionRequest.for_host()))
            dispatcher = DispatcherBackend(
                self.java_path, self.jar_path, self.config.nailgun_jar
            )
            try:
                dispatcher.start(env)
            except DispatcherStartError:
                self._state = DispatcherState.UNINITIALIZED
                raise

            self._dispatcher = dispatcher
            self._state = DispatcherState.READY
            return dispatcher

    def run(self, invocation: RenderInvocation) -> ProcessResult:
        """Run one render to completion and collect its output."""
        if self._state == DispatcherState.READY and self._dispatcher is not None:
            return self._dispatcher.run(invocation)
        return self._spawn.run(invocation)

    def open(self, invocation: RenderInvocation) -> RenderStream:
        """
        Start one render for streaming.

        With the spawn backend this is the live process. The dispatcher
        returns its output only when the call finishes, so the result comes
        back already complete.
        """
        if self._state == DispatcherState.READY and self._dispatcher is not None:
            return CompletedStream(self._dispatcher.run(invocation))
        return self._spawn.open(invocation)
