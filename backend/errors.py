"""Centralized exception hierarchy for the Productive exporter.

Provides a structured exception hierarchy for consistent error handling
across the application. All exceptions inherit from ExporterError.
"""


class ExporterError(Exception):
    """Base exception for all exporter errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message


class APIError(ExporterError):
    """Error from external API call."""

    def __init__(self, message: str, status_code: int = None, response: str = None):
        super().__init__(message, {"status_code": status_code} if status_code else None)
        self.status_code = status_code
        self.response = response


class RateLimitError(APIError):
    """Rate limit exceeded and the single retry was already spent."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: float = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class AuthenticationError(APIError):
    """Authentication failed (HTTP 401/403)."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, status_code=401)


class FetchExhaustedError(APIError):
    """A page could not be fetched within the retry budget."""

    def __init__(self, message: str, resource: str = None, page: int = None, status_code: int = None):
        super().__init__(message, status_code=status_code)
        self.details.update({"resource": resource, "page": page})
        self.resource = resource
        self.page = page


class GraphQLError(APIError):
    """GraphQL response carried an errors array."""

    def __init__(self, message: str, errors: list = None, status_code: int = None):
        super().__init__(message, status_code=status_code)
        self.errors = errors or []

    def __str__(self) -> str:
        return self.message


class DataValidationError(ExporterError):
    """Invalid data from API or request body."""

    def __init__(self, message: str, field: str = None, value=None):
        super().__init__(message, {"field": field})
        self.field = field
        self.value = value

    def __str__(self) -> str:
        return self.message


class ConfigurationError(ExporterError):
    """Invalid or missing configuration."""

    def __init__(self, message: str, setting: str = None):
        super().__init__(message, {"setting": setting})
        self.setting = setting


class JobStoppedError(ExporterError):
    """Raised by item workers once a job's stop flag is observed."""

    def __init__(self, job_id: str):
        super().__init__("Export stopped by user")
        self.job_id = job_id

    def __str__(self) -> str:
        return self.message


class JobStateError(ExporterError):
    """Illegal job status transition."""

    def __init__(self, message: str, current: str = None, requested: str = None):
        super().__init__(message, {"current": current, "requested": requested})
        self.current = current
        self.requested = requested
