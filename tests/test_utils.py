"""Tests for utility functions."""

import pytest
import logging
from pathlib import Path
import tempfile

from bulkgsea.utils import LOG_FILE_NAME, setup_logging, ensure_dir


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Put the root logger back the way the test found it."""
    root_logger = logging.getLogger()
    level = root_logger.level
    yield
    for handler in _own_handlers():
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)


def _own_handlers():
    return [h for h in logging.getLogger().handlers if getattr(h, '_bulkgsea_handler', False)]


def test_setup_logging(temp_dir):
    """Test setting up logging configuration."""
    log_dir = temp_dir / "logs"

    logger = setup_logging(log_dir)
    assert logger.name == "bulkgsea"
    assert log_dir.exists()
    assert (log_dir / LOG_FILE_NAME).exists()
    assert logging.getLogger().level == logging.INFO

    setup_logging(log_dir, level=logging.DEBUG)
    assert logging.getLogger().level == logging.DEBUG


def test_setup_logging_replaces_handlers(temp_dir):
    """Test that repeated calls do not stack handlers."""
    setup_logging(temp_dir / "logs")
    setup_logging(temp_dir / "logs")

    assert len(_own_handlers()) == 2


def test_setup_logging_console_only():
    """Test that no file handler is installed without a log directory."""
    setup_logging(console_level=logging.WARNING)

    handlers = _own_handlers()
    assert len(handlers) == 1
    assert handlers[0].level == logging.WARNING


def test_setup_logging_writes_file(temp_dir):
    """Test that package messages reach the log file."""
    log_dir = temp_dir / "logs"
    setup_logging(log_dir, level=logging.DEBUG, console_level=logging.WARNING)

    logging.getLogger("bulkgsea.test").debug("debug message for the file")
    for handler in _own_handlers():
        handler.flush()

    content = (log_dir / LOG_FILE_NAME).read_text()
    assert "Logging initialized" in content
    assert "debug message for the file" in content


def test_setup_logging_nested_dir(temp_dir):
    """Test setting up logging in a nested directory."""
    log_dir = temp_dir / "nested" / "logs"
    setup_logging(log_dir)
    assert log_dir.exists()
    assert (log_dir / LOG_FILE_NAME).exists()


def test_setup_logging_existing_dir(temp_dir):
    """Test setting up logging in an existing directory."""
    log_dir = temp_dir / "logs"
    log_dir.mkdir()
    setup_logging(log_dir)
    assert (log_dir / LOG_FILE_NAME).exists()


def test_ensure_dir(temp_dir):
    """Test directory creation."""
    test_dir = temp_dir / "test_dir"
    assert ensure_dir(test_dir) == test_dir
    assert test_dir.is_dir()

    ensure_dir(str(test_dir))


def test_ensure_dir_nested(temp_dir):
    """Test nested directory creation."""
    test_dir = temp_dir / "nested" / "test_dir"
    ensure_dir(test_dir)
    assert test_dir.is_dir()


def test_ensure_dir_file_exists(temp_dir):
    """Test behavior when a file exists at the target path."""
    test_path = temp_dir / "test_file"
    test_path.touch()

    with pytest.raises(FileExistsError):
        ensure_dir(test_path)
