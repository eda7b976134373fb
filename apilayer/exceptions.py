"""Custom exceptions for the API access layer."""


class ApiLayerError(Exception):
    """Base class for terminal call failures.

    Every terminal error carries its kind plus the number of dispatch
    attempts made and the time spent on the call, never the raw transport
    exception.
    """
    kind: str = "error"

    def __init__(
        self,
        message: str = "API call failed",
        attempts: int = 0,
        elapsed: float = 0.0,
    ):
        self.message = message
        self.attempts = attempts
        self.elapsed = elapsed
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "message": self.message,
            "attempts": self.attempts,
            "elapsed_seconds": round(self.elapsed, 3),
        }


class AuthFailedError(ApiLayerError):
    """Raised when a credential cannot be obtained or is rejected twice."""
    kind = "auth_failed"

    def __init__(
        self,
        message: str = "Authentication failed",
        attempts: int = 0,
        elapsed: float = 0.0,
    ):
        super().__init__(message, attempts, elapsed)


class TransientFailureError(ApiLayerError):
    """Raised when retries or the call deadline are exhausted.

    Covers network errors, 5xx responses, persistent rate limiting and
    deadline expiry.
    """
    kind = "transient_failure"


class PermanentFailureError(ApiLayerError):
    """Raised for client errors that retrying cannot fix (non-401/429 4xx)."""
    kind = "permanent_failure"

    def __init__(
        self,
        message: str = "Request rejected",
        status_code: int | None = None,
        attempts: int = 0,
        elapsed: float = 0.0,
    ):
        self.status_code = status_code
        super().__init__(message, attempts, elapsed)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["status_code"] = self.status_code
        return data


class CacheWriteError(Exception):
    """Raised when a synchronous cache tier rejects a write.

    Soft failure: callers log it and carry on, it never fails an API call.
    """

    def __init__(self, key: str, tier: str, detail: str = ""):
        self.key = key
        self.tier = tier
        self.detail = detail
        super().__init__(f"Cache write to {tier} tier failed: {detail}")
