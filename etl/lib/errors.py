"""
Error classes for the attribution ETL.
Every error carries a code and a details dict so run logs and the
report's data-gaps appendix can describe failures uniformly.

Hierarchy:
    PipelineError
    ├── ConfigError
    ├── APIError
    │   ├── APITimeoutError
    │   ├── APIRateLimitError
    │   ├── APIServerError
    │   └── APIAuthError
    ├── StoreError
    ├── SchemaValidationError
    └── StepError
"""


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, code: str = "UNKNOWN", details: dict = None):
        self.code = code
        self.details = details or {}
        super().__init__(f"[{code}] {message}")


class ConfigError(PipelineError):
    """Missing or invalid configuration. Always fatal."""

    def __init__(self, message: str, setting: str = None):
        super().__init__(
            message, code="CONFIG_ERROR", details={"setting": setting},
        )


# --- CRM API errors ---

class APIError(PipelineError):
    """Base class for CRM API errors."""

    def __init__(self, message: str, code: str = "API_ERROR",
                 status_code: int = None, url: str = None, **kwargs):
        self.status_code = status_code
        self.url = url
        details = {"status_code": status_code, "url": url, **kwargs}
        super().__init__(message, code=code, details=details)


class APITimeoutError(APIError):
    """Request timed out or the connection dropped."""

    def __init__(self, url: str, timeout: int):
        super().__init__(
            f"Request timed out after {timeout}s: {url}",
            code="API_TIMEOUT", url=url, timeout=timeout,
        )


class APIRateLimitError(APIError):
    """Rate limit exceeded (HTTP 429)."""

    def __init__(self, url: str, retry_after: int = None):
        msg = f"Rate limit exceeded: {url}"
        if retry_after:
            msg += f" (retry after {retry_after}s)"
        self.retry_after = retry_after
        super().__init__(
            msg, code="API_RATE_LIMIT", status_code=429, url=url,
            retry_after=retry_after,
        )


class APIServerError(APIError):
    """CRM returned a 5xx."""

    def __init__(self, url: str, status_code: int, body: str = ""):
        super().__init__(
            f"Server error {status_code}: {url} {body[:300]}",
            code="API_SERVER_ERROR", status_code=status_code, url=url,
        )


class APIAuthError(APIError):
    """Authentication or authorization failure. Never retried."""

    def __init__(self, url: str, status_code: int = 401):
        super().__init__(
            f"Authentication failed: {url}",
            code="API_AUTH_FAILED", url=url, status_code=status_code,
        )


# Errors worth retrying at the page/batch level
TRANSIENT_API_ERRORS = (APITimeoutError, APIRateLimitError, APIServerError)


# --- Store / data errors ---

class StoreError(PipelineError):
    """A read or write against the relational store failed."""

    def __init__(self, message: str, table: str = None):
        super().__init__(message, code="STORE_ERROR", details={"table": table})


class SchemaValidationError(PipelineError):
    """External metadata doesn't match what the pipeline expects."""

    def __init__(self, message: str, field: str = None):
        super().__init__(
            message, code="SCHEMA_INVALID", details={"field": field},
        )


class StepError(PipelineError):
    """A pipeline step failed as a whole."""

    def __init__(self, step_name: str, cause: Exception = None):
        msg = f"Pipeline step '{step_name}' failed"
        if cause:
            msg += f": {cause}"
        super().__init__(msg, code="STEP_FAILED", details={"step": step_name})
