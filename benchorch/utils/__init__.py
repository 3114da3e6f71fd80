"""Utilities for the orchestrator."""

from .logging import setup_logging, get_logger, LoggerMixin
from .env import Env

__all__ = [
    "setup_logging",
    "get_logger",
    "LoggerMixin",
    "Env",
]
