"""Custom exceptions for talos-provisioner."""

from enum import Enum


class ErrorCategory(str, Enum):
    """Coarse classification used by callers to decide fatal vs. best-effort."""

    NOT_FOUND = "not_found"
    IDEMPOTENT_CONFLICT = "idempotent_conflict"
    RESOURCE_BUSY = "resource_busy"
    TRANSIENT_NETWORK = "transient_network"
    OTHER = "other"


class ProvisionerError(Exception):
    """Base exception for all provisioner errors."""

    def __init__(
        self, message: str, details: str = None, category: ErrorCategory = ErrorCategory.OTHER
    ):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
            category: Structured error category
        """
        self.message = message
        self.details = details
        self.category = category
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message

    @property
    def is_not_found(self) -> bool:
        return self.category == ErrorCategory.NOT_FOUND

    @property
    def is_transient(self) -> bool:
        return self.category == ErrorCategory.TRANSIENT_NETWORK


class ConfigurationError(ProvisionerError):
    """Exception raised for configuration errors."""

    pass


class ValidationError(ProvisionerError):
    """Exception raised for validation errors."""

    pass


class HetznerAPIError(ProvisionerError):
    """Exception raised for Hetzner Cloud API errors."""

    def __init__(
        self,
        message: str,
        details: str = None,
        category: ErrorCategory = ErrorCategory.OTHER,
        code: str | None = None,
        status_code: int | None = None,
    ):
        self.code = code
        self.status_code = status_code
        super().__init__(message, details, category)


class ActionFailedError(HetznerAPIError):
    """Exception raised when an asynchronous Hetzner action ends in error."""

    pass


class TalosError(ProvisionerError):
    """Exception raised for talosctl failures."""

    pass


class KubernetesError(ProvisionerError):
    """Exception raised for Kubernetes API errors."""

    pass


class CommandError(ProvisionerError):
    """Exception raised when an external command cannot be run or fails."""

    pass


class ArtifactError(ProvisionerError):
    """Exception raised when a generated artifact is missing or unwritable."""

    pass


class PollTimeoutError(ProvisionerError):
    """Exception raised when a polled condition is not met in time."""

    pass


class QuorumViolationError(ProvisionerError):
    """Exception raised when a scale-down would break control plane quorum."""

    def __init__(self, message: str, details: str = None, max_removable: int = 0):
        self.max_removable = max_removable
        super().__init__(message, details)


class NodeUnreachableError(ProvisionerError):
    """Exception raised when a node's Talos API cannot be reached before removal."""

    pass


class StepFailedError(ProvisionerError):
    """Exception raised when a named orchestration step fails."""

    def __init__(self, step: str, cause: Exception):
        self.step = step
        self.cause = cause
        category = getattr(cause, "category", ErrorCategory.OTHER)
        super().__init__(f"Step '{step}' failed", str(cause), category)


class BatchError(ProvisionerError):
    """Exception raised when several independent concurrent tasks fail."""

    def __init__(self, description: str, errors: list[tuple[str, Exception]]):
        self.errors = errors
        lines = [f"- {name}: {error}" for name, error in errors]
        super().__init__(
            f"{description}: {len(errors)} task(s) failed",
            "\n".join(lines),
        )
