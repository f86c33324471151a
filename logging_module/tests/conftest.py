"""Pytest configuration and fixtures for logging_module tests."""

import logging
import tempfile

import pytest

from logging_module.config import LoggingConfig


@pytest.fixture
def log_dir():
    """Temporary log directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def test_config(log_dir):
    """Create test configuration writing JSON logs to a temp directory."""
    return LoggingConfig(
        log_level="DEBUG",
        log_path=log_dir,
        log_file_name="test.log",
        log_file_max_bytes=1024 * 1024,
        log_file_backup_count=2,
    )


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Put the root logger back the way pytest configured it."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
