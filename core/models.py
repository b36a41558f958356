"""
core/models.py -- Domain dataclasses for the session and cache gateway.

Pure data containers. Stores, the gate and the gateway do the work; these
only own shape. API transport models live in api/models.py.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


@dataclass(frozen=True)
class Session:
    """Contents of the encrypted session cookie.

    A session without a credential is the unauthenticated session. A present
    credential is a claim to be verified upstream, never proof. login is the
    identity the credential resolved to at login time; it scopes cache keys
    and is not a secret.
    """

    credential: Optional[str] = None
    login: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.credential

    def __repr__(self) -> str:
        # Keeps the credential out of tracebacks and log lines.
        return f"Session(credential={'<set>' if self.credential else None}, login={self.login!r})"


@dataclass(frozen=True)
class Identity:
    """Minimal identity record returned by the upstream "who am I" call."""

    login: str
    id: Optional[int] = None
    name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class RequestValidators:
    """Inbound If-None-Match / If-Modified-Since pair. Either may be absent."""

    if_none_match: Optional[str] = None
    if_modified_since: Optional[str] = None

    @property
    def present(self) -> bool:
        return bool(self.if_none_match or self.if_modified_since)


@dataclass(frozen=True)
class CacheConfig:
    """Per-resource-class cache settings. Immutable after start-up.

    max_age:                 seconds an entry is fresh.
    server_ttl:              seconds an entry is retained by the store (>= max_age).
    stale_while_revalidate:  seconds past max_age a stale entry may be served
                             while a background refresh runs (0 = disabled).
    revalidate:              send stored validators upstream on refetch.
    timeout:                 upstream call timeout override (None = settings default).
    """

    max_age: int
    server_ttl: int
    stale_while_revalidate: int = 0
    revalidate: bool = True
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_age < 0 or self.stale_while_revalidate < 0:
            raise ValueError("max_age and stale_while_revalidate must not be negative")
        if self.server_ttl < self.max_age:
            raise ValueError("server_ttl must be at least max_age")

    @property
    def allows_stale(self) -> bool:
        return self.stale_while_revalidate > 0

    @property
    def retention(self) -> int:
        """Seconds the store keeps an entry before treating it as absent."""
        return max(self.server_ttl, self.max_age + self.stale_while_revalidate)


@dataclass(frozen=True)
class CacheEntry:
    """A stored upstream payload plus its validators.

    Frozen: entries are replaced wholesale on refetch or revalidation, never
    mutated in place.
    """

    key: str
    payload: Any
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    stored_at: float = field(default_factory=time.time)
    ttl_seconds: int = 0

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.stored_at

    def expired(self, now: Optional[float] = None) -> bool:
        return self.age(now) >= self.ttl_seconds


@dataclass(frozen=True)
class UpstreamResponse:
    """Successful upstream result: status, decoded body, validators."""

    status: int
    data: Any
    etag: Optional[str] = None
    last_modified: Optional[str] = None

    @property
    def not_modified(self) -> bool:
        return self.status == 304


class DecisionKind(str, Enum):
    NOT_MODIFIED = "not_modified"
    SERVE_CACHED = "serve_cached"
    MUST_FETCH = "must_fetch"


@dataclass(frozen=True)
class Decision:
    """Outcome of ConditionalEvaluator.decide().

    reason is set for MUST_FETCH: "miss", "stale" or "validator mismatch".
    """

    kind: DecisionKind
    reason: Optional[str] = None
