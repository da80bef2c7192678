"""
Error taxonomy for remote task runs.

Runner failures are raised as RunnerError subclasses. At the outer boundary
(execute_remote_task, the CLI) any exception is turned into an ErrorInfo so
callers can route on a stable kind instead of matching message strings:

    result = execute_remote_task(task_config, context)
    if result["status"] == "error" and result["error_info"]["retryable"]:
        ...
"""

from enum import Enum
from typing import Any, Optional

from google.api_core import exceptions as api_exceptions
from pydantic import BaseModel, Field


class RunnerError(Exception):
    """Base class for every error raised by the runner."""


class ConfigurationError(RunnerError):
    """Missing or invalid configuration; raised before any remote call."""


class StagingError(RunnerError):
    """A single Cloud Storage transfer failed."""

    def __init__(self, message: str, bucket: Optional[str] = None, key: Optional[str] = None):
        self.bucket = bucket
        self.key = key
        location = f" (gs://{bucket}/{key})" if bucket and key is not None else ""
        super().__init__(f"{message}{location}")


class RemoteExecutionError(RunnerError):
    """The remote job reached a failed, canceled or unknown terminal state."""

    def __init__(self, status_code: int, stdout_count: int = 0, stderr_count: int = 0, state: Optional[str] = None):
        self.status_code = status_code
        self.stdout_count = stdout_count
        self.stderr_count = stderr_count
        self.state = state
        super().__init__(
            f"Remote job ended in state {state or 'UNKNOWN'} (status code {status_code}); "
            f"observed {stdout_count} stdout and {stderr_count} stderr lines"
        )


class RemoteTimeoutError(RunnerError, TimeoutError):
    """No terminal state was observed before the deadline elapsed."""

    def __init__(self, deadline: float, last_state: Optional[str] = None):
        self.deadline = deadline
        self.last_state = last_state
        super().__init__(
            f"Remote job did not terminate within {deadline:g}s (last observed state: {last_state or 'none'})"
        )


class ErrorKind(str, Enum):
    """Standardized error categories."""

    CONFIGURATION = "configuration"       # Missing bucket, invalid option
    STORAGE_ACCESS = "storage_access"     # Upload/download/list failure
    REMOTE_EXECUTION = "remote_execution"  # Job ended in a failure state
    TIMEOUT = "timeout"                   # Deadline elapsed

    RATE_LIMIT = "rate_limit"             # 429 / RESOURCE_EXHAUSTED
    AUTH = "auth"                         # 401/403
    NOT_FOUND = "not_found"               # 404
    CLIENT_ERROR = "client_error"         # other 4xx
    SERVER_ERROR = "server_error"         # 5xx

    UNKNOWN = "unknown"


class ErrorInfo(BaseModel):
    """Standardized error object for result payloads."""

    kind: ErrorKind = Field(default=ErrorKind.UNKNOWN, description="Error category")
    retryable: bool = Field(default=False, description="Whether this error is worth retrying")
    code: str = Field(default="UNKNOWN", description="Error code (HTTP_429, REMOTE_1, ...)")
    message: str = Field(default="Unknown error", description="Human-readable error message")
    source: str = Field(default="gcprunner", description="Component that produced this error")

    http_status: Optional[int] = Field(None, description="HTTP status code for Google API errors")
    exception_type: Optional[str] = Field(None, description="Python exception class name")
    details: dict[str, Any] = Field(default_factory=dict, description="Extra context")

    def to_dict(self) -> dict[str, Any]:
        d = {
            "kind": self.kind.value,
            "retryable": self.retryable,
            "code": self.code,
            "message": self.message,
            "source": self.source,
        }
        if self.http_status is not None:
            d["http_status"] = self.http_status
        if self.exception_type is not None:
            d["exception_type"] = self.exception_type
        if self.details:
            d["details"] = self.details
        return d


def classify_api_error(error: api_exceptions.GoogleAPICallError, source: str = "google_api") -> ErrorInfo:
    """Classify a google.api_core error by its HTTP status."""
    status_code = error.code if isinstance(error.code, int) else None
    error_type = type(error).__name__
    message = str(error.message or error)

    if status_code == 429:
        kind, retryable = ErrorKind.RATE_LIMIT, True
    elif status_code in (401, 403):
        kind, retryable = ErrorKind.AUTH, False
    elif status_code == 404:
        kind, retryable = ErrorKind.NOT_FOUND, False
    elif status_code is not None and 400 <= status_code < 500:
        kind, retryable = ErrorKind.CLIENT_ERROR, False
    elif status_code is not None and status_code >= 500:
        kind, retryable = ErrorKind.SERVER_ERROR, True
    else:
        kind, retryable = ErrorKind.UNKNOWN, False

    return ErrorInfo(
        kind=kind,
        retryable=retryable,
        code=f"HTTP_{status_code}" if status_code is not None else f"API_{error_type}",
        message=message,
        source=source,
        http_status=status_code,
        exception_type=error_type,
    )


def classify_exception(error: BaseException) -> ErrorInfo:
    """Map any exception raised by a run onto an ErrorInfo."""
    error_type = type(error).__name__

    if isinstance(error, ConfigurationError):
        return ErrorInfo(
            kind=ErrorKind.CONFIGURATION,
            code="CONFIGURATION",
            message=str(error),
            exception_type=error_type,
        )
    if isinstance(error, StagingError):
        details = {k: v for k, v in (("bucket", error.bucket), ("key", error.key)) if v is not None}
        return ErrorInfo(
            kind=ErrorKind.STORAGE_ACCESS,
            code="STAGING",
            message=str(error),
            source="storage",
            exception_type=error_type,
            details=details,
        )
    if isinstance(error, RemoteExecutionError):
        return ErrorInfo(
            kind=ErrorKind.REMOTE_EXECUTION,
            code=f"REMOTE_{error.status_code}",
            message=str(error),
            source="job_service",
            exception_type=error_type,
            details={
                "status_code": error.status_code,
                "state": error.state,
                "stdout_count": error.stdout_count,
                "stderr_count": error.stderr_count,
            },
        )
    if isinstance(error, RemoteTimeoutError):
        return ErrorInfo(
            kind=ErrorKind.TIMEOUT,
            retryable=True,
            code="TIMEOUT",
            message=str(error),
            source="job_service",
            exception_type=error_type,
            details={"deadline": error.deadline, "last_state": error.last_state},
        )
    if isinstance(error, api_exceptions.GoogleAPICallError):
        return classify_api_error(error)

    return ErrorInfo(
        kind=ErrorKind.UNKNOWN,
        code=f"PY_{error_type}",
        message=str(error),
        exception_type=error_type,
    )
