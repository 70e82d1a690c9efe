"""Custom exceptions for cluster hosting."""


class ClusterHostingError(Exception):
    """Base exception for all cluster hosting errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class ValidationError(ClusterHostingError):
    """Exception raised when a cluster definition is malformed."""

    pass


class ConfigurationError(ClusterHostingError):
    """Exception raised for configuration errors such as names or port ranges that cannot fit."""

    pass


class ConflictError(ClusterHostingError):
    """Exception raised when a resource with an expected name belongs to something else."""

    pass


class ProviderError(ClusterHostingError):
    """Exception raised when a provider API call fails persistently."""

    def __init__(self, message: str, details: str = None, code: str | None = None):
        self.code = code
        super().__init__(message, details)


class TransientProviderError(ProviderError):
    """Exception raised for throttling, timeouts and eventual-consistency lag."""

    pass


class OperationTimeoutError(TransientProviderError):
    """Exception raised when a bounded wait elapses before its condition holds."""

    pass


class CapacityError(ClusterHostingError):
    """Exception raised when requested instance or disk capacity is unavailable."""

    pass


class InstanceStateError(ClusterHostingError):
    """Exception raised when an instance is found in a state the engine did not cause."""

    pass


class PartialNodeFailure(ClusterHostingError):
    """Exception raised when one or more per-node steps failed.

    Attributes:
        failures: Mapping of node name to the exception raised for that node
    """

    def __init__(self, step: str, failures: dict[str, Exception]):
        self.step = step
        self.failures = dict(failures)
        nodes = ", ".join(sorted(self.failures))
        details = "\n".join(f"{name}: {error}" for name, error in sorted(self.failures.items()))
        super().__init__(f"Step '{step}' failed on node(s): {nodes}", details)
