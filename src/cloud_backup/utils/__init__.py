"""Utility functions and helpers."""

from .encryption import EncryptionManager
from .file_utils import FileHelper
from .logging import setup_logging
from .retry import RetryController, RetryPolicy, retry_with_backoff

__all__ = [
    "EncryptionManager",
    "FileHelper",
    "RetryController",
    "RetryPolicy",
    "retry_with_backoff",
    "setup_logging",
]
