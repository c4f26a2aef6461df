"""Error handling framework for planning and applying declarations."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError
from converge.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur during a run."""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    DEPENDENCY = "dependency"
    REFERENCE = "reference"
    PROVIDER = "provider"
    STATE = "state"
    CREDENTIAL = "credential"
    NETWORK = "network"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Run cannot continue
    ERROR = "error"  # Resource failed but independent branches continue
    WARNING = "warning"
    INFO = "info"


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    provider: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class DeploymentError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize deployment error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")

        if self.cause:
            lines.append(f"   Cause: {str(self.cause)}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': {
                'resource_id': self.context.resource_id,
                'resource_type': self.context.resource_type,
                'operation': self.context.operation,
                'provider': self.context.provider,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(DeploymentError):
    """Error in the declaration file or settings."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ValidationError(DeploymentError):
    """A declaration or plan violates a rule (duplicate ids, prevent_destroy)."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class CycleError(DeploymentError):
    """The reference graph is not acyclic."""

    def __init__(self, message: str, cycle: Optional[List[str]] = None, **kwargs):
        kwargs.setdefault('suggestions', [
            'Remove one of the references forming the cycle',
            'Move shared values into a separate resource both can reference'
        ])
        super().__init__(
            message,
            category=ErrorCategory.DEPENDENCY,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )
        self.cycle = cycle or []


class UnresolvedReferenceError(DeploymentError):
    """A reference targets a resource or attribute that does not exist."""

    def __init__(
        self,
        message: str,
        target_id: Optional[str] = None,
        attribute: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            category=ErrorCategory.REFERENCE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )
        self.target_id = target_id
        self.attribute = attribute


class ProviderError(DeploymentError):
    """A provider operation failed; scoped to one resource and its dependents."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.PROVIDER,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ResourceNotFoundError(ProviderError):
    """The provider has no object with the requested physical id."""
    pass


class StateError(DeploymentError):
    """Error related to state management."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class StateNotFoundError(StateError):
    """State file does not exist."""
    pass


class StateLockError(StateError):
    """Another run holds the state lock."""
    pass


class StateCorruptionError(StateError):
    """State snapshot fails its integrity check."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('suggestions', [
            'Restore the state file from a backup or version control',
            'Inspect the file manually; the engine will not overwrite it'
        ])
        super().__init__(message, **kwargs)


class ErrorHandler:
    """Converts exceptions raised by providers into categorized engine errors."""

    # AWS error codes with a known meaning for a provisioning run
    AWS_ERROR_MAPPING = {
        'InvalidClientTokenId': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'AWS credentials are invalid or expired',
            'suggestions': [
                'Check that your AWS credentials are correctly configured',
                'Verify credentials using: aws sts get-caller-identity'
            ]
        },
        'ExpiredToken': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'AWS session token has expired',
            'suggestions': [
                'Refresh your AWS session credentials',
                'Re-authenticate with your identity provider'
            ]
        },
        'AccessDenied': {
            'category': ErrorCategory.PROVIDER,
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role',
                'Verify you have the required permissions for this operation'
            ]
        },
        'AccessDeniedException': {
            'category': ErrorCategory.PROVIDER,
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role',
                'Verify you have the required permissions for this operation'
            ]
        },
        'ThrottlingException': {
            'category': ErrorCategory.PROVIDER,
            'message': 'API rate limit exceeded',
            'suggestions': [
                'Lower settings.max_workers to reduce concurrent calls',
                'Re-run apply; only the failed resources will be retried'
            ]
        },
        'AlreadyExistsException': {
            'category': ErrorCategory.PROVIDER,
            'message': 'Resource already exists',
            'suggestions': [
                'Use a different name for the resource',
                'Delete the existing resource if it is no longer needed'
            ]
        },
        'InvalidRequestException': {
            'category': ErrorCategory.VALIDATION,
            'message': 'Invalid parameter or configuration',
            'suggestions': [
                'Review the resource attributes against the provider schema',
                'Verify all required attributes are provided'
            ]
        },
        'ServiceInternalErrorException': {
            'category': ErrorCategory.NETWORK,
            'message': 'AWS service temporarily unavailable',
            'suggestions': [
                'Wait a few moments and re-run apply'
            ]
        }
    }

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> DeploymentError:
        """Handle an exception and convert to DeploymentError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            DeploymentError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, DeploymentError):
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return ProviderError(
                message='No usable AWS credentials found',
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Pass --profile or set settings.aws_profile'
                ]
            )

        if isinstance(error, (ConnectionError, TimeoutError)):
            return ProviderError(
                message=f'Network error: {str(error)}',
                context=context,
                cause=error,
                suggestions=['Check your network connectivity and re-run apply']
            )

        return ProviderError(
            message=str(error) or type(error).__name__,
            context=context,
            cause=error
        )

    def _handle_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> DeploymentError:
        """Handle AWS ClientError.

        Args:
            error: The ClientError
            context: Error context

        Returns:
            Categorized ProviderError
        """
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')

        if error_code == 'ResourceNotFoundException':
            return ResourceNotFoundError(
                message=f"Resource not found: {error_message}",
                context=context,
                cause=error
            )

        error_info = self.AWS_ERROR_MAPPING.get(error_code)
        if error_info:
            err = ProviderError(
                message=f"{error_info['message']}: {error_message}",
                context=context,
                cause=error,
                suggestions=error_info['suggestions']
            )
            err.category = error_info['category']
            return err

        return ProviderError(
            message=f"AWS Error ({error_code}): {error_message}",
            context=context,
            cause=error,
            suggestions=[f'AWS Request ID: {context.request_id}']
        )

    def log_error(self, error: DeploymentError):
        """Log an error with appropriate level.

        Args:
            error: The error to log
        """
        log_message = error.to_user_message()

        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            self.logger.error(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

        self.logger.debug(f"Error details: {error.to_dict()}")


# Global error handler instance
error_handler = ErrorHandler()
