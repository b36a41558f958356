"""
api/routes/v1/session.py -- Login, session check and logout.

Routes:
  POST   /api/login    -- validate a token upstream, then store it in the session
  GET    /api/session  -- report whether the session holds a live credential
  DELETE /api/session  -- destroy the session; always succeeds

Security:
  [L1] POST /login is rate-limited per client address.
  [L2] A submitted token is verified with the upstream who-am-I call before it
       is written to the session. Client-asserted validity is never trusted.
  [L3] GET /session re-verifies the stored token on every call. A token the
       upstream now rejects is dropped from the browser (session destroyed).
       A transient upstream failure returns 500 and leaves the session intact.
  [L4] Cache-Control: no-store on every response from this module.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_LIMIT, limiter
from api.models import LoginRequest, SessionStatus, SessionUser, SuccessResponse
from auth.dependencies import get_gate, get_session_store
from auth.gate import looks_like_token
from cache.policy import NO_STORE
from core.errors import InvalidCredential, Unauthenticated, UpstreamUnavailable, ValidationFailure
from core.models import Session

logger = logging.getLogger("hubgate.api.session")

# Auth policy:
# - POST   /api/login:   public -- this is how a credential enters the session
# - GET    /api/session: public -- reports authentication state itself
# - DELETE /api/session: public -- clearing a cookie needs no prior auth
router = APIRouter()


def _json(status_code: int, content: dict) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = NO_STORE  # [L4]
    return resp


@router.post("/login", response_model=SuccessResponse)
@limiter.limit(LOGIN_LIMIT)  # [L1] must be BELOW @router so the limited wrapper is what gets registered
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Validate the submitted token upstream and persist it in the session [L2]."""
    if not looks_like_token(body.token):
        raise ValidationFailure("Token is required.")

    try:
        identity = get_gate(request).authenticate(body.token)
    except InvalidCredential:
        return _json(401, {"error": {"code": "invalid_credential", "message": "Invalid token."}})

    resp = _json(200, SuccessResponse().model_dump(exclude_none=True))
    get_session_store(request).write(resp, Session(credential=body.token, login=identity.login))
    logger.info("Login succeeded for %s", identity.login)
    return resp


@router.get("/session", response_model=SessionStatus)
def session_status(request: Request) -> JSONResponse:
    """Report the session state, verifying a stored credential upstream [L3]."""
    gate = get_gate(request)
    unauthenticated = SessionStatus(authenticated=False).model_dump(exclude_none=True)

    try:
        session = gate.require_session(request)
    except Unauthenticated:
        return _json(401, unauthenticated)

    try:
        identity = gate.authenticate(session.credential)
    except InvalidCredential:
        resp = _json(401, unauthenticated)
        gate.revoke(resp)
        return resp
    except UpstreamUnavailable:
        return _json(500, unauthenticated)

    status = SessionStatus(authenticated=True, user=SessionUser.from_identity(identity))
    return _json(200, status.model_dump())


@router.delete("/session", response_model=SuccessResponse)
def logout(request: Request) -> JSONResponse:
    """Destroy the session. Idempotent: succeeds whether or not a session existed."""
    resp = _json(200, SuccessResponse().model_dump(exclude_none=True))
    get_session_store(request).destroy(resp)
    return resp
