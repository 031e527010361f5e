"""Error handling framework for reconciliation operations."""

from typing import Optional, Dict, Any, List, Sequence
from enum import Enum
from dataclasses import dataclass
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)
from landform.utils.logging import get_logger


class ErrorCategory(Enum):
    """Categories of errors that can occur while planning or applying."""
    CONFIGURATION = "configuration"
    DEPENDENCY = "dependency"
    PLAN = "plan"
    STATE = "state"
    LOCK = "lock"
    PROVIDER = "provider"
    CREDENTIAL = "credential"
    NETWORK = "network"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Operation cannot continue
    ERROR = "error"  # Resource failed but independent work can continue
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    address: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    state_id: Optional[str] = None
    provider: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class LandformError(Exception):
    """Base exception for all landform errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize error.

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

        if self.context.address:
            lines.append(f"   Resource: {self.context.address}")
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
        """Convert error to dictionary for logging/serialization."""
        return {
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': {
                'address': self.context.address,
                'resource_type': self.context.resource_type,
                'operation': self.context.operation,
                'state_id': self.context.state_id,
                'provider': self.context.provider,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(LandformError):
    """Error in the project file, declarations or variables."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ExpressionError(ConfigurationError):
    """Malformed ``${...}`` expression."""

    def __init__(self, message: str, expression: Optional[str] = None, **kwargs):
        self.expression = expression
        if expression is not None:
            message = f"{message} in expression '{expression}'"
        super().__init__(message, **kwargs)


class DependencyError(LandformError):
    """Error related to resource dependencies."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(
            message,
            category=ErrorCategory.DEPENDENCY,
            **kwargs
        )


class CycleError(DependencyError):
    """Resources reference each other in a cycle."""

    def __init__(self, cycle: Sequence[str], **kwargs):
        self.cycle = list(cycle)
        kwargs.setdefault('suggestions', [
            'Remove one of the references or depends_on entries in the cycle',
        ])
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(self.cycle)}",
            **kwargs
        )


class UnresolvedReferenceError(DependencyError):
    """A reference names a resource, attribute or variable that does not exist."""

    def __init__(self, message: str, reference: Optional[str] = None, **kwargs):
        self.reference = reference
        super().__init__(message, **kwargs)


class PlanError(LandformError):
    """The requested change-set cannot be produced."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.PLAN,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class StateError(LandformError):
    """Error related to state storage."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.STATE)
        super().__init__(
            message,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class StateLockError(StateError):
    """Base class for state locking errors."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.LOCK, **kwargs)


class LockHeldError(StateLockError):
    """The state lock is held by someone else."""

    def __init__(self, state_id: str, holder=None, **kwargs):
        self.state_id = state_id
        self.holder = holder
        message = f"State '{state_id}' is locked"
        if holder is not None:
            message += (
                f" by {holder.who} (operation: {holder.operation}, "
                f"lock ID: {holder.lock_id}, expires: {holder.expires_at.isoformat()})"
            )
        kwargs.setdefault('suggestions', [
            'Wait for the other operation to finish and retry',
            'If the holder crashed, run: landform force-unlock <LOCK_ID>',
        ])
        super().__init__(message, context=ErrorContext(state_id=state_id), **kwargs)


class LockNotHeldError(StateLockError):
    """The supplied lock token is not (or no longer) the valid holder."""

    def __init__(self, state_id: str, lock_id: str, reason: str, **kwargs):
        self.state_id = state_id
        self.lock_id = lock_id
        super().__init__(
            f"Lock {lock_id} on state '{state_id}' is not valid: {reason}",
            context=ErrorContext(state_id=state_id),
            **kwargs
        )


class ProviderError(LandformError):
    """Error raised by a provider call."""

    transient = False

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.PROVIDER)
        super().__init__(message, severity=ErrorSeverity.ERROR, **kwargs)


class TransientProviderError(ProviderError):
    """Retryable provider error (rate limiting, eventual consistency)."""

    transient = True


class FatalProviderError(ProviderError):
    """Non-retryable provider error."""


class ProviderTimeoutError(FatalProviderError):
    """A provider call exceeded its time budget; its outcome is unknown."""


class PartialApplyError(LandformError):
    """An apply finished with failed or skipped resources."""

    def __init__(self, failed: Sequence[str], skipped: Sequence[str] = (), **kwargs):
        self.failed = list(failed)
        self.skipped = list(skipped)
        message = f"Apply failed for {len(self.failed)} resource(s): {', '.join(self.failed) or '-'}"
        if self.skipped:
            message += f"; skipped {len(self.skipped)}: {', '.join(self.skipped)}"
        super().__init__(
            message,
            category=ErrorCategory.PROVIDER,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ErrorHandler:
    """Converts exceptions from providers and AWS into the landform taxonomy."""

    # AWS error codes that indicate a temporary condition
    TRANSIENT_AWS_ERROR_CODES = {
        'RequestTimeout',
        'RequestTimeoutException',
        'ServiceUnavailable',
        'ThrottlingException',
        'Throttling',
        'TooManyRequestsException',
        'RequestLimitExceeded',
        'RequestThrottled',
        'SlowDown',
        'ProvisionedThroughputExceededException',
        'InternalError',
        'InternalFailure',
        'ServiceException',
        'TransactionInProgressException',
    }

    AWS_SUGGESTIONS = {
        'AccessDenied': [
            'Check IAM policies attached to your user/role',
            'Verify you have the required permissions for this operation',
        ],
        'ExpiredToken': [
            'Refresh your AWS session credentials',
        ],
        'ValidationException': [
            'Review the resource attributes for invalid values',
        ],
    }

    def __init__(self):
        self.logger = get_logger(__name__)

    def is_transient(self, error: Exception) -> bool:
        """Determine whether an exception is worth retrying.

        Args:
            error: The exception raised by a provider call

        Returns:
            True for transient provider errors, throttling and connectivity failures
        """
        if isinstance(error, ProviderError):
            return error.transient

        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', '')
            return error_code in self.TRANSIENT_AWS_ERROR_CODES

        if isinstance(error, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
            return True

        return isinstance(error, (ConnectionError, TimeoutError))

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> LandformError:
        """Handle an exception and convert to a LandformError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            LandformError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, LandformError):
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return FatalProviderError(
                message=f'AWS credentials unavailable: {error}',
                category=ErrorCategory.CREDENTIAL,
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Specify a profile in the backend configuration',
                ]
            )

        if self.is_transient(error):
            return TransientProviderError(
                message=f'Network error: {error}',
                category=ErrorCategory.NETWORK,
                context=context,
                cause=error
            )

        if isinstance(error, BotoCoreError):
            return FatalProviderError(
                message=f'AWS client error: {error}',
                context=context,
                cause=error
            )

        self.logger.debug(f"Unexpected {type(error).__name__} wrapped as a provider error", exc_info=error)

        return FatalProviderError(
            message=f'{type(error).__name__}: {error}',
            category=ErrorCategory.UNKNOWN,
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> ProviderError:
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')

        error_class = (
            TransientProviderError
            if error_code in self.TRANSIENT_AWS_ERROR_CODES
            else FatalProviderError
        )
        return error_class(
            message=f"AWS Error ({error_code}): {error_message}",
            context=context,
            cause=error,
            suggestions=self.AWS_SUGGESTIONS.get(error_code, [])
        )


# Global error handler instance
error_handler = ErrorHandler()
