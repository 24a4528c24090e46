"""Utility functions for gene set enrichment analysis."""

import logging
from pathlib import Path
from typing import Optional, Union

LOG_FILE_NAME = 'pipeline.log'

# Marks handlers installed here so repeated calls replace instead of stacking them
_HANDLER_TAG = '_bulkgsea_handler'


def setup_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level=logging.INFO,
    console_level: Optional[int] = None
) -> logging.Logger:
    """Set up logging for a pipeline run.

    Debug messages go to the log file only when ``console_level`` is
    higher than ``level``, which keeps the progress bar readable.

    Args:
        log_dir: Directory to store the log file; no file is written if None
        level: Level of the root logger and of the file handler
        console_level: Level of the console handler, defaults to ``level``

    Returns:
        The package logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        if getattr(handler, _HANDLER_TAG, False):
            root_logger.removeHandler(handler)
            handler.close()

    if log_dir:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, mode='w')
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        setattr(file_handler, _HANDLER_TAG, True)
        root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level if console_level is None else console_level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    ))
    setattr(console_handler, _HANDLER_TAG, True)
    root_logger.addHandler(console_handler)

    root_logger.info("Logging initialized")
    return logging.getLogger('bulkgsea')


def ensure_dir(path: Union[str, Path]) -> Path:
    """Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path

    Returns:
        Path object for the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
