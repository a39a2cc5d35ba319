"""
Structured Error Handling for the Context Engine

Provides a hierarchy of exceptions for the retrieval pipeline with clear
semantics for which failures are recovered locally and which surface to
the caller.
"""

from typing import Optional, Dict, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and alerting"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class ContextEngineError(Exception):
    """
    Base exception for the context engine.

    All engine-specific errors should inherit from this class.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "CONTEXT_ENGINE_ERROR",
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        """
        Initialize engine error.

        Args:
            message: Human-readable error message
            error_code: Machine-readable error code for API responses
            severity: Error severity level
            context: Additional context for debugging
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for API responses"""
        return {
            "error": self.message,
            "error_code": self.error_code,
            "severity": self.severity.value,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.error_code}: {self.message})"


class RetriableError(ContextEngineError):
    """
    Error that may succeed on a later attempt.

    Typically temporary issues like timeouts, rate limits, transient failures.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "RETRIABLE_ERROR",
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        **kwargs,
    ):
        super().__init__(message, error_code, severity=severity, **kwargs)


class NonRetriableError(ContextEngineError):
    """
    Error that should NOT be retried.

    Typically permanent issues like bad configuration or malformed input.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "NON_RETRIABLE_ERROR",
        **kwargs,
    ):
        super().__init__(message, error_code, severity=ErrorSeverity.HIGH, **kwargs)


# ============================================================================
# Specific Error Types
# ============================================================================


class ConfigurationError(NonRetriableError):
    """Invalid or missing configuration"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIG_ERROR", **kwargs)


class ValidationError(NonRetriableError):
    """Input validation failed"""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="VALIDATION_ERROR", **kwargs)
        self.field = field


class TransientGatewayError(RetriableError):
    """Query enhancement gateway failed. Always recovered locally."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message, error_code="QUERY_ENHANCEMENT_ERROR", severity=ErrorSeverity.LOW, **kwargs
        )


class EmbeddingError(RetriableError):
    """Embedding gateway error"""

    def __init__(self, message: str, model: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="EMBEDDING_ERROR", **kwargs)
        self.model = model


class IndexBackendError(RetriableError):
    """Vector index backend call failed"""

    def __init__(self, message: str, index_name: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="INDEX_BACKEND_ERROR", **kwargs)
        self.index_name = index_name


class NamespaceSearchError(IndexBackendError):
    """Search against one namespace failed. Recovered as an empty result."""

    def __init__(
        self,
        message: str,
        knowledge_base_id: Optional[str] = None,
        namespace: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.error_code = "NAMESPACE_SEARCH_ERROR"
        self.severity = ErrorSeverity.LOW
        self.knowledge_base_id = knowledge_base_id
        self.namespace = namespace


class CacheError(ContextEngineError):
    """Context store operation failed"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CACHE_ERROR", severity=ErrorSeverity.LOW, **kwargs)


# ============================================================================
# Error Utilities
# ============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if error may succeed on retry"""
    return isinstance(error, RetriableError)


def get_error_severity(error: Exception) -> ErrorSeverity:
    """Get severity level of error"""
    if isinstance(error, ContextEngineError):
        return error.severity
    return ErrorSeverity.HIGH  # Default for foreign exceptions


def format_error_for_logging(error: Exception, request_id: Optional[str] = None) -> Dict[str, Any]:
    """Format error for structured logging"""
    result: Dict[str, Any] = {
        "error_type": type(error).__name__,
        "message": str(error),
    }

    if request_id:
        result["request_id"] = request_id

    if isinstance(error, ContextEngineError):
        result.update(error.to_dict())

    if error.__cause__:
        result["caused_by"] = {
            "type": type(error.__cause__).__name__,
            "message": str(error.__cause__),
        }

    return result
