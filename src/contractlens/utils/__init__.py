"""
ContractLens Utils Package

This package contains utility functions and helper modules:
- Error handling: exception taxonomy and structured errors
- Logger: logging setup for entry points
"""

from .error_handling import (
    AnalysisTimeoutError,
    ContractLensError,
    ErrorSeverity,
    ExplanationBudgetExceeded,
    GraphIntegrityError,
    ModelError,
    ParseError,
    ScoringError,
    UnresolvedImportError,
    UnsupportedConstructError,
    error_to_dict,
    handle_exceptions,
)
from .logger import setup_logger

__all__ = [
    'AnalysisTimeoutError',
    'ContractLensError',
    'ErrorSeverity',
    'ExplanationBudgetExceeded',
    'GraphIntegrityError',
    'ModelError',
    'ParseError',
    'ScoringError',
    'UnresolvedImportError',
    'UnsupportedConstructError',
    'error_to_dict',
    'handle_exceptions',
    'setup_logger',
]
