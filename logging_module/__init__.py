"""Logging Module for the Stream Fan-out Engine.

Main Components:
    - LoggingConfig: Configuration management
    - setup_logging: Console plus rotating JSON file logging
    - JsonFormatter: Structured log formatter

Example:
    >>> from logging_module import LoggingConfig, setup_logging
    >>> setup_logging(LoggingConfig.from_env())
"""

from logging_module.config import LoggingConfig
from logging_module.logger import JsonFormatter, setup_logging

__version__ = "1.0.0"
__all__ = ["LoggingConfig", "JsonFormatter", "setup_logging"]
