"""
Error taxonomy of the ContractLens pipeline.

Fatal errors abort a run and reach the caller as structured dictionaries
(see :func:`error_to_dict`). Non-fatal ones are recorded on the unit or
the Finding and the run continues.
"""

import functools
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ContractLensError(Exception):
    """Base class of every error raised by the analysis core."""

    #: Fatal errors abort the run; degraded ones are attached to the result.
    fatal = True
    severity_default = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        severity: Optional[ErrorSeverity] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.severity = severity or self.severity_default
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "message": self.message,
            "type": type(self).__name__,
            "severity": self.severity.value,
            "fatal": self.fatal,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result


class ParseError(ContractLensError):
    """Raised when contract source is not syntactically valid."""

    severity_default = ErrorSeverity.HIGH

    def __init__(self, message: str, line: int = 0, column: int = 0, path: Optional[str] = None):
        super().__init__(f"{message} (line {line}, column {column})",
                         details={"line": line, "column": column, "path": path})
        self.line = line
        self.column = column
        self.path = path


class UnresolvedImportError(ContractLensError):
    """An import target could not be located. Non-fatal."""

    fatal = False
    severity_default = ErrorSeverity.LOW

    def __init__(self, import_path: str, importer: Optional[str] = None):
        super().__init__(f"Unable to resolve import '{import_path}'",
                         details={"import_path": import_path, "importer": importer})
        self.import_path = import_path
        self.importer = importer


class UnsupportedConstructError(ContractLensError):
    """A construct outside the modeled language subset. Non-fatal."""

    fatal = False
    severity_default = ErrorSeverity.LOW

    def __init__(self, construct: str, line: int = 0):
        super().__init__(f"Unsupported construct '{construct}' at line {line}",
                         details={"construct": construct, "line": line})
        self.construct = construct
        self.line = line


class GraphIntegrityError(ContractLensError):
    """Raised when flow-graph endpoints cannot be resolved to hybrid graph nodes."""

    severity_default = ErrorSeverity.CRITICAL

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class ModelError(ContractLensError):
    """Model weights or thresholds could not be loaded."""

    severity_default = ErrorSeverity.CRITICAL


class ScoringError(ContractLensError):
    severity_default = ErrorSeverity.HIGH


class AnalysisTimeoutError(ContractLensError, TimeoutError):
    """The per-run deadline expired before the run completed."""

    severity_default = ErrorSeverity.HIGH

    def __init__(self, run_id: str, timeout: float, stage: Optional[str] = None):
        message = f"Analysis run {run_id} exceeded its {timeout:.1f}s deadline"
        if stage:
            message += f" during {stage}"
        super().__init__(message, details={"run_id": run_id, "timeout": timeout, "stage": stage})
        self.run_id = run_id
        self.timeout = timeout
        self.stage = stage


class ExplanationBudgetExceeded(ContractLensError):
    """No counterfactual was found within the configured edit budget. Non-fatal."""

    fatal = False
    severity_default = ErrorSeverity.LOW

    def __init__(self, kind: str, budget: int):
        super().__init__(f"No counterfactual for {kind} within {budget} edits",
                         details={"kind": kind, "budget": budget})
        self.kind = kind
        self.budget = budget


def error_to_dict(error: Exception) -> Dict[str, Any]:
    """
    Convert an exception to a structured, JSON-serialisable dictionary.

    Errors from outside the taxonomy are reported as fatal with HIGH severity.
    """
    if isinstance(error, ContractLensError):
        return error.to_dict()
    return {
        "message": str(error) or "An unexpected error occurred",
        "type": type(error).__name__,
        "severity": ErrorSeverity.HIGH.value,
        "fatal": True,
    }


def handle_exceptions(
    default_return: Any = None,
    catch: Tuple[Type[Exception], ...] = (Exception,),
    propagate: Tuple[Type[Exception], ...] = (),
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for collaborator calls whose failure must not abort a run.

    Args:
        default_return: Value returned when the call fails
        catch: Exception types treated as a recoverable failure
        propagate: Exception types re-raised even when they match ``catch``

    Returns:
        Decorated function
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return func(*args, **kwargs)
            except propagate:
                raise
            except catch as e:
                logger.warning(f"Error in {func.__name__}: {str(e)}", exc_info=True)
                return default_return
        return wrapper

    return decorator
