"""
auth/dependencies.py -- FastAPI Depends() helpers for session-gated routes.

require_session() is the only way a route obtains a credential. It reads the
encrypted session cookie through the CredentialGate and raises
Unauthenticated (401) when the session is empty, before any cache lookup or
upstream call takes place.

The gate and session store are wired onto app.state by the
lifespan in api/main.py (and by the test lifespan in tests/conftest.py).
"""

from __future__ import annotations

from fastapi import Request

from auth.gate import CredentialGate
from auth.session import SessionStore
from core.models import RequestValidators, Session


def get_gate(request: Request) -> CredentialGate:
    return request.app.state.gate


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def require_session(request: Request) -> Session:
    """Return the non-empty session or raise Unauthenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(session: Session = Depends(require_session)): ...

    The returned session always carries a login. A session written without
    one is completed with a who-am-I call; a rejected credential surfaces as
    InvalidCredential, which the exception handler turns into a revocation.
    """
    gate = get_gate(request)
    session = gate.require_session(request)
    if session.login is None:
        identity = gate.authenticate(session.credential)
        session = Session(credential=session.credential, login=identity.login)
    return session


def request_validators(request: Request) -> RequestValidators:
    """Extract the inbound conditional-request headers."""
    return RequestValidators(
        if_none_match=request.headers.get("if-none-match") or None,
        if_modified_since=request.headers.get("if-modified-since") or None,
    )
