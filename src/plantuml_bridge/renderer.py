"""
High-level rendering API.

Ties the pieces together for one render call: preprocess the source,
resolve `dot`, compose the environment, build the PlantUML argument
vector and hand the invocation to a `PlantumlRunner`.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel

from .environment import compose, normalize_executable_path
from .locator import (
    ExecutableOrigin,
    Platform,
    ResolutionRequest,
    ResolvedExecutable,
    current_platform,
    resolve_dot,
)
from .preprocessor import fix_plantuml_syntax, preprocess
from .runner import (
    PlantumlRunner,
    ProcessResult,
    RenderInvocation,
    RenderStream,
    RunnerConfig,
    has_render_error,
)

logger = logging.getLogger(__name__)

# --- PlantUML flags ---
PIPE = "-pipe"
DECODE = "-decodeurl"
TESTDOT = "-testdot"
CONFIG = "-config"
DOT = "-graphvizdot"
CHARSET = "-charset"

RESOURCES_DIR = Path(__file__).parent / "resources"
CONFIGS = {
    "classic": RESOURCES_DIR / "classic.puml",
    "monochrome": RESOURCES_DIR / "monochrome.puml",
}

DOT_OK_MARKER = "Installation seems OK. File generation OK"


class OutputFormat(str, Enum):
    PNG = "png"
    SVG = "svg"
    EPS = "eps"
    ASCII = "ascii"
    UNICODE = "unicode"


FORMAT_FLAGS: dict[OutputFormat, Optional[str]] = {
    OutputFormat.PNG: None,  # PlantUML's default
    OutputFormat.SVG: "-tsvg",
    OutputFormat.EPS: "-eps",
    OutputFormat.ASCII: "-ttxt",
    OutputFormat.UNICODE: "-tutxt",
}


class RenderOptions(BaseModel):
    """Per-call options. Everything is optional."""

    # Only used when no runner is passed in; a runner keeps its own Java
    explicit_java_path: Optional[str] = None
    explicit_dot_path: Optional[str] = None
    format: OutputFormat = OutputFormat.PNG
    # Passed straight to -graphvizdot, skipping resolution
    dot: Optional[str] = None
    # A bundled config name ("classic", "monochrome") or a file path
    config: Optional[str] = None
    charset: Optional[str] = None
    # Working directory for the render; relative !include paths resolve here
    include: Optional[str] = None

    # Preprocessing
    auto_fix: bool = False
    warn_on_fix: bool = True
    normalize_whitespace: bool = True
    font_name: Optional[str] = None
    font_size: Optional[int] = None


def build_argv(options: RenderOptions, dot_path: Optional[str] = None) -> list[str]:
    """Translate options into PlantUML command-line flags (pipe mode)."""
    argv = [PIPE]

    flag = FORMAT_FLAGS[options.format]
    if flag:
        argv.append(flag)

    if options.config:
        template = CONFIGS.get(options.config)
        argv.extend([CONFIG, str(template) if template else options.config])

    if dot_path:
        argv.extend([DOT, dot_path])

    if options.charset:
        argv.extend([CHARSET, options.charset])

    return argv


def _resolve_dot_for(options: RenderOptions) -> Optional[ResolvedExecutable]:
    if options.dot:
        return ResolvedExecutable(path=options.dot, origin=ExecutableOrigin.EXPLICIT)
    resolved = resolve_dot(ResolutionRequest.for_host(options.explicit_dot_path))
    if resolved is None:
        logger.debug("Graphviz dot not found; PlantUML will use its own lookup")
    return resolved


def _encode_payload(text: str, charset: Optional[str]) -> bytes:
    if not charset:
        return text.encode("utf-8")
    try:
        return text.encode(charset)
    except LookupError:
        logger.warning(f"Unknown charset '{charset}', sending UTF-8")
        return text.encode("utf-8")


def prepare_invocation(
    source: str,
    options: Optional[RenderOptions] = None,
    platform: Optional[Platform] = None,
) -> RenderInvocation:
    """
    Build the complete invocation for one render call.

    The source goes through the preprocessor, `dot` is resolved and its
    absolute path goes into both argv and the environment.
    """
    options = options or RenderOptions()
    platform = platform or current_platform()

    text = preprocess(
        source,
        auto_fix=options.auto_fix,
        warn_on_fix=options.warn_on_fix,
        normalize_whitespace=options.normalize_whitespace,
        font_name=options.font_name,
        font_size=options.font_size,
        platform=platform,
    )

    resolved_dot = _resolve_dot_for(options)
    dot_path = (
        normalize_executable_path(resolved_dot.path, platform) if resolved_dot else None
    )

    return RenderInvocation(
        argv=build_argv(options, dot_path),
        cwd=options.include,
        env=compose(None, resolved_dot, platform),
        stdin_payload=_encode_payload(text, options.charset),
    )


def _runner_for(
    runner: Optional[PlantumlRunner], options: Optional[RenderOptions] = None
) -> PlantumlRunner:
    java_hint = options.explicit_java_path if options else None
    if runner is not None:
        if java_hint and java_hint != runner.java_path:
            logger.warning(
                f"Ignoring explicit_java_path {java_hint}; the runner uses "
                f"{runner.java_path}"
            )
        return runner
    return PlantumlRunner(RunnerConfig(java_path=java_hint))


def generate(
    source: str,
    options: Optional[RenderOptions] = None,
    runner: Optional[PlantumlRunner] = None,
) -> ProcessResult:
    """
    Render diagram source and collect the output.

    Args:
        source: PlantUML source text (including @startuml).
        options: Render options. Defaults to PNG.
        runner: The application's runner. Without one, a spawn-per-call
            runner is built for this call.

    Returns:
        ProcessResult: Image bytes on stdout, PlantUML's stderr and the
        exit code. A non-zero exit is not raised; see `has_render_error`.
    """
    options = options or RenderOptions()
    invocation = prepare_invocation(source, options)
    return _runner_for(runner, options).run(invocation)


def generate_stream(
    source: str,
    options: Optional[RenderOptions] = None,
    runner: Optional[PlantumlRunner] = None,
) -> RenderStream:
    """Like `generate`, but return the process so stdout can be streamed."""
    options = options or RenderOptions()
    invocation = prepare_invocation(source, options)
    return _runner_for(runner, options).open(invocation)


def generate_from_file(
    path: Union[str, Path],
    options: Optional[RenderOptions] = None,
    runner: Optional[PlantumlRunner] = None,
) -> ProcessResult:
    """Render a .puml file; includes resolve relative to the file by default."""
    path = Path(path)
    options = options or RenderOptions()
    if options.include is None:
        options = options.model_copy(update={"include": str(path.parent.resolve())})
    source = path.read_text(encoding="utf-8")
    return generate(source, options, runner)


def decode(encoded: str, runner: Optional[PlantumlRunner] = None) -> ProcessResult:
    """Turn a PlantUML URL-encoded string back into diagram source."""
    invocation = RenderInvocation(argv=[DECODE, encoded])
    return _runner_for(runner).run(invocation)


def testdot(runner: Optional[PlantumlRunner] = None) -> bool:
    """Ask PlantUML whether its Graphviz installation works."""
    resolved_dot = _resolve_dot_for(RenderOptions())
    argv = [TESTDOT]
    if resolved_dot:
        dot_path = normalize_executable_path(resolved_dot.path, current_platform())
        argv = [DOT, dot_path, TESTDOT]
    invocation = RenderInvocation(argv=argv, env=compose(None, resolved_dot))
    result = _runner_for(runner).run(invocation)
    output = (result.stdout + result.stderr).decode("utf-8", errors="replace")
    return DOT_OK_MARKER in output


def has_syntax_error(code: str, runner: Optional[PlantumlRunner] = None) -> bool:
    """
    Render `code` to SVG and report whether PlantUML failed.

    A runner that cannot even start counts as an error.
    """
    options = RenderOptions(format=OutputFormat.SVG)
    try:
        result = generate(code, options, runner)
    except OSError as e:
        logger.warning(f"Syntax check could not run PlantUML: {e}")
        return True
    return has_render_error(result)


def fix_syntax(
    code: str,
    runner: Optional[PlantumlRunner] = None,
    warn_on_fix: bool = True,
    normalize_whitespace: bool = True,
) -> tuple[str, bool]:
    """
    Auto-fix `code` only if PlantUML rejects it.

    Returns:
        (code, was_fixed). Code that renders cleanly comes back unchanged
        with False. Otherwise the fixed code is returned even if it still
        fails, since the fixer is best effort.
    """
    if not code:
        return code, False

    runner = _runner_for(runner)
    if not has_syntax_error(code, runner):
        return code, False

    fixed = fix_plantuml_syntax(
        code,
        auto_fix=True,
        warn_on_fix=warn_on_fix,
        normalize_whitespace=normalize_whitespace,
    )
    if has_syntax_error(fixed, runner):
        logger.warning("Auto-fixed PlantUML source still fails to render")
    return fixed, True


def render_plantuml_to_png(
    puml_content: str,
    output_file_base: Path,
    runner: Optional[PlantumlRunner] = None,
    options: Optional[RenderOptions] = None,
) -> bool:
    """
    Renders a PlantUML string to a PNG file.

    This function will also create the source .puml file.

    Args:
        puml_content (str): The full PlantUML diagram string (including @startuml).
        output_file_base (Path): The base path for output,
                                e.g., Path("reports/my_trace").
                                This function will create "reports/my_trace.puml"
                                and "reports/my_trace.png".
        runner (PlantumlRunner): The runner to use. Defaults to spawn-per-call.
        options (RenderOptions): Extra options; the format is forced to PNG.

    Returns:
        bool: True if rendering was successful, False otherwise.
    """
    puml_file = output_file_base.with_suffix(".puml")
    png_file = output_file_base.with_suffix(".png")
    options = (options or RenderOptions()).model_copy(
        update={"format": OutputFormat.PNG}
    )

    try:
        output_file_base.parent.mkdir(parents=True, exist_ok=True)

        puml_file.write_text(puml_content, encoding="utf-8")
        logger.info(f"  ✓ Saved PlantUML source to {puml_file}")

        result = generate(puml_content, options, runner)
        if not has_render_error(result) and result.stdout:
            png_file.write_bytes(result.stdout)
    except FileNotFoundError as e:
        logger.error(f"  ❌ Java runtime not found: {e}")
        logger.error("  Install Java or set an explicit Java path.")
        return False
    except OSError as e:
        logger.error(f"  ❌ PlantUML could not be run: {e}")
        return False

    if has_render_error(result) or not result.stdout:
        logger.error(f"  ❌ PlantUML rendering failed (Return Code: {result.returncode}):")
        logger.error(f"  STDERR: {result.stderr.decode('utf-8', errors='replace')}")
        return False

    logger.info(f"  ✓ Rendered PNG diagram to {png_file}")
    return True
