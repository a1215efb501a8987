# main.py
import logging
from pathlib import Path

from plantuml_bridge.config import get_settings
from plantuml_bridge.locator import (
    ResolutionRequest,
    resolve_dot,
    resolve_java,
    verify_dot,
    verify_java,
)

# Import core tools
from plantuml_bridge.logging import setup_logging
from plantuml_bridge.renderer import RenderOptions, render_plantuml_to_png
from plantuml_bridge.runner import ExecutionStrategy, PlantumlRunner, RunnerConfig

# Read the config and set the log level
setup_logging(script_name="main_test_run")

# Get a logger instance
logger = logging.getLogger(__name__)

SAMPLE_DIAGRAM = """@startuml
title Render check
Alice -> Bob: Hello
Bob --> Alice: 你好
@enduml
"""


def report_runtimes() -> None:
    """Log what the locator finds on this machine."""
    request = ResolutionRequest.for_host()

    java = resolve_java(request)
    if java:
        logger.info(f"Java: {java.path} ({java.origin.value})")
        logger.info(f"Java runs: {verify_java(java.path)}")
    else:
        logger.warning("Java: not found")

    dot = resolve_dot(request)
    if dot:
        logger.info(f"Graphviz dot: {dot.path} ({dot.origin.value})")
        logger.info(f"dot runs: {verify_dot(dot.path)}")
    else:
        logger.warning("Graphviz dot: not found")


def main() -> None:
    """Main execution logic."""
    report_runtimes()

    settings = get_settings()
    strategy = (
        ExecutionStrategy.PERSISTENT_DISPATCHER
        if settings.DISPATCHER.NAILGUN_JAR
        else ExecutionStrategy.SPAWN_PER_CALL
    )
    runner = PlantumlRunner(RunnerConfig(strategy=strategy))
    logger.info(f"Execution strategy: {runner.strategy.value}")

    output_path = Path("reports/render_check")
    success = render_plantuml_to_png(
        SAMPLE_DIAGRAM, output_path, runner=runner, options=RenderOptions()
    )

    if success:
        logger.info(f"Successfully saved diagram to {output_path.with_suffix('.png')}")
    else:
        logger.error("Failed to render diagram.")


if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        logger.critical(f"Unhandled exception in main: {e}", exc_info=True)
