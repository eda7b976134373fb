"""Data models shared by the API access layer components."""

import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class OutcomeKind(str, Enum):
    """Kinds of result a single dispatch attempt (or a whole call) can end in."""
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    AUTH_FAILED = "auth_failed"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class Success:
    payload: bytes
    status_code: int = 200
    headers: Mapping[str, str] = field(default_factory=dict)
    kind: OutcomeKind = field(default=OutcomeKind.SUCCESS, init=False)


@dataclass(frozen=True)
class RateLimited:
    retry_after: Optional[float] = None  # Seconds, None when the server sent no hint
    kind: OutcomeKind = field(default=OutcomeKind.RATE_LIMITED, init=False)


@dataclass(frozen=True)
class AuthFailed:
    reason: str = "credential rejected"
    kind: OutcomeKind = field(default=OutcomeKind.AUTH_FAILED, init=False)


@dataclass(frozen=True)
class TransientFailure:
    cause: str = "transient failure"
    kind: OutcomeKind = field(default=OutcomeKind.TRANSIENT_FAILURE, init=False)


@dataclass(frozen=True)
class PermanentFailure:
    cause: str = "permanent failure"
    status_code: Optional[int] = None
    kind: OutcomeKind = field(default=OutcomeKind.PERMANENT_FAILURE, init=False)


ApiCallOutcome = Union[Success, RateLimited, AuthFailed, TransientFailure, PermanentFailure]


@dataclass(frozen=True)
class Credential:
    """Bearer credential issued for a set of scopes.

    Immutable; a refresh produces a new instance.
    """
    token: str
    expires_at: float  # Absolute, epoch seconds
    scopes: frozenset[str] = frozenset()

    def is_valid(self, now: float, margin: float = 0.0) -> bool:
        """Check the credential outlives ``now`` by more than ``margin`` seconds."""
        return self.expires_at - now > margin

    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def __repr__(self) -> str:
        # Keep the token out of logs and tracebacks
        return f"Credential(expires_at={self.expires_at!r}, scopes={sorted(self.scopes)!r})"


class TokenGrant(BaseModel):
    """Answer of a credential authority.

    Accepts OAuth2 token responses (``expires_in``) as well as authorities
    that already know the absolute expiry (``expires_at``).
    """
    access_token: str = Field(min_length=1)
    expires_at: Optional[float] = None
    expires_in: Optional[float] = None
    token_type: str = "bearer"

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    @model_validator(mode="after")
    def check_expiry_present(self) -> "TokenGrant":
        if self.expires_at is None and self.expires_in is None:
            raise ValueError("token grant carries no expiry")
        return self

    def resolve_expiry(self, now: float) -> float:
        if self.expires_at is not None:
            return self.expires_at
        return now + self.expires_in


_ENTRY_HEADER = struct.Struct(">d")


@dataclass(frozen=True)
class CacheEntry:
    """A cached response payload with the time it was first stored."""
    key: str
    value: bytes
    created_at: float

    def age(self, now: float) -> float:
        return now - self.created_at

    def is_expired(self, now: float, ttl: float) -> bool:
        return self.age(now) > ttl

    def to_bytes(self) -> bytes:
        """Serialize for byte-oriented tiers: timestamp header then payload."""
        return _ENTRY_HEADER.pack(self.created_at) + self.value

    @classmethod
    def from_bytes(cls, key: str, raw: bytes) -> "CacheEntry":
        if len(raw) < _ENTRY_HEADER.size:
            raise ValueError(f"cache record for {key!r} is truncated")
        (created_at,) = _ENTRY_HEADER.unpack_from(raw)
        return cls(key=key, value=bytes(raw[_ENTRY_HEADER.size:]), created_at=created_at)


@dataclass
class PutResult:
    """Result of a cache write; remote failures are soft."""
    remote_stored: bool = True
    error: Optional[str] = None

    @property
    def soft_failure(self) -> bool:
        return not self.remote_stored


@dataclass
class InvalidateResult:
    remote_deleted: bool = True
    error: Optional[str] = None


@dataclass
class RateLimitStatus:
    """Snapshot of the limiter's sliding window."""
    limit: int
    remaining: int
    reset_after: float
    blocked_for: float = 0.0


@dataclass(frozen=True)
class CallEvent:
    """Terminal state of one logical API call, for observability sinks."""
    method: str
    path: str
    outcome: OutcomeKind
    attempts: int
    waited: float
    elapsed: float
    cache_hit: bool = False
    cache_tier: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    request_id: Optional[str] = None

    def as_log_context(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "method": self.method,
            "path": self.path,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "elapsed_ms": round(self.elapsed * 1000, 1),
            "waited_ms": round(self.waited * 1000, 1),
            "cache_tier": self.cache_tier,
            "status_code": self.status_code,
        }
