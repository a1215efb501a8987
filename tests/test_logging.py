import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from colorlog import ColoredFormatter

from plantuml_bridge.logging import get_logger, setup_logging


@pytest.fixture(autouse=True)
def reset_logging() -> Iterator[None]:
    """Reset logging configuration before each test."""
    # Store original handlers and level
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level

    yield

    # Clean up after test, closing the file handlers we opened
    for handler in root.handlers:
        if handler not in original_handlers:
            handler.close()
    root.handlers = original_handlers
    root.setLevel(original_level)


def test_logging_level_default(reload_settings: Any, tmp_path: Path) -> None:
    """
    Tests that the default log level is INFO when debug is off.
    """
    reload_settings({"PLANTUML_DEBUG": ""})

    setup_logging(log_dir=tmp_path)

    assert logging.getLogger().level == logging.INFO


def test_logging_level_debug(reload_settings: Any, tmp_path: Path) -> None:
    """
    Tests that the log level is DEBUG when PLANTUML_DEBUG is set.
    """
    reload_settings({"PLANTUML_DEBUG": "1"})

    setup_logging(log_dir=tmp_path)

    assert logging.getLogger().level == logging.DEBUG


def test_logging_level_override(reload_settings: Any, tmp_path: Path) -> None:
    """
    Tests that passing a log level string overrides the debug toggle.
    """
    reload_settings({"PLANTUML_DEBUG": "1"})

    setup_logging(log_dir=tmp_path, log_level_override="warning")

    assert logging.getLogger().level == logging.WARNING


def test_handlers_and_log_file(tmp_path: Path) -> None:
    log_file = setup_logging(script_name="render", log_dir=tmp_path / "logs")

    root = logging.getLogger()
    assert len(root.handlers) == 2
    console, file_handler = root.handlers
    assert isinstance(console.formatter, ColoredFormatter)
    assert isinstance(file_handler, logging.FileHandler)
    assert file_handler.level == logging.DEBUG

    get_logger("plantuml_bridge.test").info("hello from the test")
    file_handler.flush()

    assert log_file.parent == tmp_path / "logs"
    assert log_file.name.startswith("render_")
    assert "hello from the test" in log_file.read_text(encoding="utf-8")


def test_setup_twice_does_not_duplicate_handlers(tmp_path: Path) -> None:
    setup_logging(log_dir=tmp_path)
    setup_logging(log_dir=tmp_path)

    assert len(logging.getLogger().handlers) == 2
