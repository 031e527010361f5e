"""Utility modules for logging, error handling, and retries."""

from landform.utils.retry import RetryStrategy, with_retry
from landform.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    LandformError,
    ConfigurationError,
    ExpressionError,
    DependencyError,
    CycleError,
    UnresolvedReferenceError,
    PlanError,
    StateError,
    StateLockError,
    LockHeldError,
    LockNotHeldError,
    ProviderError,
    TransientProviderError,
    FatalProviderError,
    ProviderTimeoutError,
    PartialApplyError,
    ErrorHandler,
    error_handler
)
from landform.utils.logging import get_logger, setup_logging

__all__ = [
    # Retry
    'RetryStrategy',
    'with_retry',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'LandformError',
    'ConfigurationError',
    'ExpressionError',
    'DependencyError',
    'CycleError',
    'UnresolvedReferenceError',
    'PlanError',
    'StateError',
    'StateLockError',
    'LockHeldError',
    'LockNotHeldError',
    'ProviderError',
    'TransientProviderError',
    'FatalProviderError',
    'ProviderTimeoutError',
    'PartialApplyError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
]
