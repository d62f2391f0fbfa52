"""Utility modules."""

from .exceptions import (
    BankReconError,
    ConfigurationError,
    InputError,
    ParseError,
    FormatDetectionError,
    ConflictError,
    ProviderError,
    PersistenceError,
)
from .logging_config import setup_logging

__all__ = [
    "BankReconError",
    "ConfigurationError",
    "InputError",
    "ParseError",
    "FormatDetectionError",
    "ConflictError",
    "ProviderError",
    "PersistenceError",
    "setup_logging",
]
