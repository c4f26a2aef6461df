"""Utility modules for logging, errors, backoff and AWS sessions."""

from converge.utils.aws_client import AWSClientManager
from converge.utils.retry import RetryStrategy, Poller, PollTimeoutError
from converge.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    DeploymentError,
    ConfigurationError,
    ValidationError,
    CycleError,
    UnresolvedReferenceError,
    ProviderError,
    ResourceNotFoundError,
    StateError,
    StateNotFoundError,
    StateLockError,
    StateCorruptionError,
    ErrorHandler,
    error_handler
)
from converge.utils.logging import get_logger, setup_logging, LogContext

__all__ = [
    # AWS Client
    'AWSClientManager',

    # Backoff
    'RetryStrategy',
    'Poller',
    'PollTimeoutError',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'DeploymentError',
    'ConfigurationError',
    'ValidationError',
    'CycleError',
    'UnresolvedReferenceError',
    'ProviderError',
    'ResourceNotFoundError',
    'StateError',
    'StateNotFoundError',
    'StateLockError',
    'StateCorruptionError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
    'LogContext',
]
