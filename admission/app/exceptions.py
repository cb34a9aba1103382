"""Custom exceptions for the admission service."""


class AdmissionError(Exception):
    """Base class for admission exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Admission error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(AdmissionError):
    """Raised when a limit descriptor, tier table or whitelist is invalid.

    Configuration errors are detected at startup (route registration) and
    must stop the process from serving with a bad configuration.
    """
    status_code = 500

    def __init__(self, message: str = "Invalid rate limit configuration", descriptor: str | None = None):
        self.descriptor = descriptor
        if descriptor is not None:
            message = f"{message}: {descriptor!r}"
        super().__init__(message)


class BackendError(AdmissionError):
    """Raised when the shared backing store could not complete an operation.

    Maps to HTTP 503 Service Unavailable, but the coordinator recovers from
    it by switching to the in-process fallback store.
    """
    status_code = 503

    def __init__(self, message: str = "Rate limit backend unavailable", backend: str = "redis"):
        self.backend = backend
        super().__init__(message)


class BackendTimeoutError(BackendError):
    """The backing-store round trip exceeded its time budget."""


class BackendConnectionError(BackendError):
    """The backing store could not be reached."""
