"""
auth/gate.py -- Credential gate: decides whether a request may call upstream.

The upstream "who am I" call (GET /user) is the single source of truth for
credential validity. looks_like_token() is an advisory pre-filter only: it
rejects input that cannot possibly be a token (empty, whitespace, absurd
length) so obvious garbage does not cost an upstream call, but passing it
proves nothing.

Failure semantics:
  - No credential in the session -> Unauthenticated, without any upstream call.
  - Upstream 401 -> InvalidCredential. The caller renders a 401 and calls
    revoke() on the response so the dead credential is dropped from the
    browser and the next request observes "unauthenticated".
  - Network failure, timeout, 5xx, rate limiting -> UpstreamUnavailable. The
    session is left alone; a flaky upstream must not log users out.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from starlette.requests import Request
from starlette.responses import Response

from auth.session import SessionStore
from core.errors import (
    FailureKind,
    InvalidCredential,
    Unauthenticated,
    UpstreamFailureError,
    UpstreamUnavailable,
)
from core.models import Identity, Session

logger = logging.getLogger("hubgate.gate")

# Known GitHub token prefixes. Used for a log hint only, never for validity.
KNOWN_TOKEN_PREFIXES = ("ghp_", "gho_", "ghu_", "ghs_", "ghr_", "github_pat_")
_MAX_TOKEN_LENGTH = 255


class IdentityProvider(Protocol):
    def whoami(self, credential: str, timeout: Optional[float] = None) -> Identity: ...


def looks_like_token(candidate: Optional[str]) -> bool:
    """Advisory format check. False means "certainly not a token"."""
    if not candidate or len(candidate) > _MAX_TOKEN_LENGTH:
        return False
    return not any(ch.isspace() for ch in candidate)


class CredentialGate:
    def __init__(self, session_store: SessionStore, upstream: IdentityProvider, timeout: Optional[float] = None) -> None:
        self._sessions = session_store
        self._upstream = upstream
        self._timeout = timeout

    def authenticate(self, candidate: str) -> Identity:
        """Verify a credential with exactly one upstream who-am-I call.

        Returns the Identity on success.

        Raises:
            InvalidCredential:   upstream rejected the credential (401).
            UpstreamUnavailable: any other failure; validity is unknown.
        """
        if not looks_like_token(candidate):
            raise InvalidCredential("Invalid token.")
        if not candidate.startswith(KNOWN_TOKEN_PREFIXES):
            logger.info("Credential has an unrecognised prefix; deferring to upstream")
        try:
            return self._upstream.whoami(candidate, timeout=self._timeout)
        except UpstreamFailureError as e:
            if e.failure.kind is FailureKind.INVALID_CREDENTIAL:
                raise InvalidCredential() from e
            logger.warning("Identity check failed upstream: %s", e.failure.kind.value)
            raise UpstreamUnavailable() from e

    def require_session(self, request: Request) -> Session:
        """Return the request's non-empty Session or raise Unauthenticated.

        Performs no upstream call: an empty session is rejected locally.
        """
        session = self._sessions.read(request)
        if session.is_empty:
            raise Unauthenticated()
        return session

    def revoke(self, response: Response) -> None:
        """Drop a credential the upstream has rejected."""
        logger.info("Destroying session after upstream rejected its credential")
        self._sessions.destroy(response)
