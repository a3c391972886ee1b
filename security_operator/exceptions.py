"""
Custom Exceptions - Domain-specific Error Handling
==================================================
Provides clear, type-safe exceptions for the reconciliation engine.
All exceptions include error codes so they can be recorded on scan
conditions and returned by the report API unchanged.

Taxonomy:
    ConfigurationException    -> fatal at startup, the operator does not run
    TransientScanException    -> retried with exponential backoff
    FatalScanException        -> terminal for the target until its image changes
    RequeueException          -> a reconcile finished with retryable failures
"""

from typing import Any


class OperatorException(Exception):
    """
    Base exception for all security operator errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable error code (condition reason / API code)
        details: Additional context (e.g., workload, container, image)
    """

    def __init__(
        self,
        message: str,
        error_code: str = "INTERNAL_ERROR",
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API-friendly dictionary."""
        return {
            "code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationException(OperatorException):
    """Raised when the operator configuration is unusable (startup only)."""

    def __init__(self, reason: str):
        super().__init__(
            message=f"invalid configuration: {reason}",
            error_code="INVALID_CONFIGURATION",
            details={"reason": reason},
        )
        self.reason = reason


# =============================================================================
# SCAN EXCEPTIONS
# =============================================================================

class ScanException(OperatorException):
    """Base for errors raised while starting or finishing a scan."""

    retryable: bool = False


class TransientScanException(ScanException):
    """A scan failed for a reason that may go away on retry."""

    retryable = True

    def __init__(
        self,
        image: str,
        reason: str,
        error_code: str = "SCAN_TRANSIENT_ERROR",
    ):
        super().__init__(
            message=f"Scan of '{image}' failed: {reason}",
            error_code=error_code,
            details={"image": image, "reason": reason},
        )
        self.image = image
        self.reason = reason


class ScannerUnreachableException(TransientScanException):
    """Raised when the scanner backend cannot be contacted."""

    def __init__(self, endpoint: str, reason: str):
        ScanException.__init__(
            self,
            message=f"Scanner at '{endpoint}' unreachable: {reason}",
            error_code="SCANNER_UNREACHABLE",
            details={"endpoint": endpoint, "reason": reason},
        )
        self.image = ""
        self.reason = reason
        self.endpoint = endpoint


class ScanTimeoutException(TransientScanException):
    """Raised when a scan exceeds the maximum allowed time."""

    def __init__(self, image: str, timeout_seconds: int | float):
        super().__init__(
            image=image,
            reason=f"scan exceeded timeout of {timeout_seconds} seconds",
            error_code="SCAN_TIMEOUT",
        )
        self.timeout_seconds = timeout_seconds


class ScanExecutionException(TransientScanException):
    """Raised when the scanner process or job exits abnormally."""

    def __init__(self, image: str, reason: str, exit_code: int | None = None):
        super().__init__(
            image=image,
            reason=reason,
            error_code="SCAN_EXECUTION_FAILED",
        )
        self.details["exit_code"] = exit_code
        self.exit_code = exit_code


class FatalScanException(ScanException):
    """A scan can never succeed for this image; retrying is pointless."""

    def __init__(
        self,
        image: str,
        reason: str,
        error_code: str = "SCAN_FATAL_ERROR",
    ):
        super().__init__(
            message=f"Cannot scan '{image}': {reason}",
            error_code=error_code,
            details={"image": image, "reason": reason},
        )
        self.image = image
        self.reason = reason


class InvalidImageException(FatalScanException):
    """Raised when an image reference is malformed."""

    def __init__(self, image: str, reason: str):
        super().__init__(image=image, reason=reason, error_code="INVALID_IMAGE")


class UnsupportedImageException(FatalScanException):
    """Raised when the scanner cannot reach an image (pull policy, registry)."""

    def __init__(self, image: str, reason: str):
        super().__init__(image=image, reason=reason, error_code="UNSUPPORTED_IMAGE")


class ImageNotFoundException(FatalScanException):
    """Raised when an image cannot be found in its registry."""

    def __init__(self, image: str, registry: str = "unknown"):
        super().__init__(
            image=image,
            reason=f"image not found in registry '{registry}'",
            error_code="IMAGE_NOT_FOUND",
        )
        self.registry = registry


class ResultParseException(FatalScanException):
    """Raised when scanner output cannot be turned into findings."""

    def __init__(self, image: str, reason: str):
        super().__init__(image=image, reason=reason, error_code="RESULT_PARSE_ERROR")


# =============================================================================
# RECONCILE EXCEPTIONS
# =============================================================================

class RequeueException(OperatorException):
    """
    Raised by a reconciler when at least one target failed transiently.

    The controller requeues the key with backoff; the wrapped errors are
    kept for logging.
    """

    def __init__(self, key: str, errors: list[Exception]):
        super().__init__(
            message=f"Reconcile of '{key}' will be retried: "
            + "; ".join(str(e) for e in errors),
            error_code="REQUEUE",
            details={"key": key, "errors": len(errors)},
        )
        self.key = key
        self.errors = errors


class ClusterException(OperatorException):
    """Raised when a Kubernetes API call fails unexpectedly."""

    def __init__(self, operation: str, reason: str, status: int | None = None):
        super().__init__(
            message=f"Kubernetes API call '{operation}' failed: {reason}",
            error_code="CLUSTER_ERROR",
            details={"operation": operation, "reason": reason, "status": status},
        )
        self.operation = operation
        self.status = status


# =============================================================================
# DATABASE EXCEPTIONS
# =============================================================================

class DatabaseTransactionException(OperatorException):
    """Raised when a report store transaction fails."""

    def __init__(self, operation: str, reason: str):
        super().__init__(
            message=f"Database transaction failed during {operation}: {reason}",
            error_code="DATABASE_TRANSACTION_ERROR",
            details={"operation": operation, "reason": reason},
        )
