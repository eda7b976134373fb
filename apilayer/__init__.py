"""apilayer: resilient access to remote HTTP APIs.

Token authentication with single-flight refresh, a three-tier response
cache, sliding window rate limiting and bounded retries, composed by
``ResilientApiClient``.
"""

from apilayer.exceptions import (
    ApiLayerError,
    AuthFailedError,
    CacheWriteError,
    PermanentFailureError,
    TransientFailureError,
)
from apilayer.factory import build_client
from apilayer.services.api_client import ResilientApiClient

__version__ = "0.1.0"

__all__ = [
    "ApiLayerError",
    "AuthFailedError",
    "CacheWriteError",
    "PermanentFailureError",
    "TransientFailureError",
    "ResilientApiClient",
    "build_client",
]
