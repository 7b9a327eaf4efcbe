import json
from typing import TYPE_CHECKING, Optional, Union

if TYPE_CHECKING:
    from platform_api_client.models import JobFailureType

AUTH_HELP_URL = "https://voxel51.com/docs/api/?python#authentication"


class APIError(Exception):
    """Raised when a platform request returns a non-success response"""

    def __init__(self, message: str, code: Optional[int] = None):
        self.message = message
        self.code = code
        super().__init__(f"{code}: {message}" if code is not None else message)

    @classmethod
    def from_response(cls, status: int, body: Union[bytes, str]) -> "APIError":
        """Builds an error from a response body of the form {"error": {"message", "code"}}"""
        if isinstance(body, bytes):
            body = body.decode("utf-8", errors="replace")
        try:
            error = json.loads(body)["error"]
            return cls(error.get("message", body), error.get("code", status))
        except (ValueError, KeyError, TypeError, AttributeError):
            return cls(body or "Unknown error", status)


class APITimeoutError(TimeoutError):
    pass


class JobExecutionError(Exception):
    def __init__(self, job_id: str, failure_type: Optional["JobFailureType"] = None):
        self.job_id = job_id
        self.failure_type = failure_type
        message = f"Job {job_id} failed"
        if failure_type is not None and failure_type.value != "NONE":
            message += f" (failure type: {failure_type.value})"
        super().__init__(message)


class TokenError(Exception):
    def __init__(self, message: str):
        super().__init__(
            f"{message}. See {AUTH_HELP_URL} for more information about "
            "activating an API token"
        )


class ApplicationTokenError(TokenError):
    pass


class RemoteDataPathError(ValueError):
    pass
