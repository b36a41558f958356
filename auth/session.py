"""
auth/session.py -- Encrypted cookie session store.

The whole session lives in the browser as one cookie. There is no server-side
session table: the cookie value is a compact JWE token produced by python-jose
with direct key agreement ("dir") and AES-256-GCM content encryption. GCM is
authenticated encryption, so a cookie that has been tampered with, truncated,
or encrypted under a different key fails to decrypt instead of decoding to a
different session.

Security design decisions:
  [S1] Fail closed. read() never raises on a bad cookie; any decode failure
       yields the empty Session, indistinguishable from "no cookie".

  [S2] The 256-bit content key is SHA-256 of SECRET_COOKIE_PASSWORD. The
       password length (>= 32 chars) is enforced by core.config at startup;
       SessionStore re-checks it so a store can never be built with a short key.

  [S3] Cookie attributes: HttpOnly, SameSite=Lax, Path=/, and Secure whenever
       the deployment is not development/test (Settings.cookie_secure).

Layer rule: no imports from api/ or cache/. core/ is allowed.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Optional

from jose import jwe
from jose.exceptions import JWEError
from starlette.requests import Request
from starlette.responses import Response

from core.config import MIN_KEY_LENGTH, Settings
from core.models import Session

logger = logging.getLogger("hubgate.session")

_ALGORITHM = "dir"
_ENCRYPTION = "A256GCM"


def encode_session(session: Session, key: bytes) -> str:
    """Serialize and encrypt a Session. decode_session() is its inverse."""
    payload = {}
    if session.credential:
        payload["credential"] = session.credential
        if session.login:
            payload["login"] = session.login
    token = jwe.encrypt(
        json.dumps(payload, separators=(",", ":")).encode("utf-8"),
        key,
        algorithm=_ALGORITHM,
        encryption=_ENCRYPTION,
    )
    return token.decode("ascii") if isinstance(token, bytes) else token


def decode_session(value: str, key: bytes) -> Optional[Session]:
    """Decrypt and authenticate a cookie value. Returns None on any failure."""
    try:
        plaintext = jwe.decrypt(value, key)
    except JWEError:
        return None
    except Exception:
        # [S1] malformed input can surface as non-JWE errors from the backend
        return None
    if plaintext is None:
        return None
    try:
        payload = json.loads(plaintext)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    credential = payload.get("credential")
    login = payload.get("login")
    if credential is not None and not isinstance(credential, str):
        return None
    if login is not None and not isinstance(login, str):
        return None
    if not credential:
        return Session()
    return Session(credential=credential, login=login or None)


class SessionStore:
    """Reads and writes the session cookie. Stateless apart from its settings."""

    def __init__(self, settings: Settings) -> None:
        password = settings.secret_cookie_password
        if len(password) < MIN_KEY_LENGTH:
            raise ValueError(f"Session key must be at least {MIN_KEY_LENGTH} characters.")
        self._key = hashlib.sha256(password.encode("utf-8")).digest()
        self.cookie_name = settings.session_cookie_name
        self._max_age = settings.session_max_age
        self._secure = settings.cookie_secure

    def read(self, request: Request) -> Session:
        """Return the request's Session; the empty Session on absence or tampering [S1]."""
        raw = request.cookies.get(self.cookie_name)
        if not raw:
            return Session()
        session = decode_session(raw, self._key)
        if session is None:
            logger.info("Discarding session cookie that failed to decrypt")
            return Session()
        return session

    def write(self, response: Response, session: Session) -> None:
        """Encrypt the Session into the response's Set-Cookie header [S3]."""
        response.set_cookie(
            self.cookie_name,
            value=encode_session(session, self._key),
            max_age=self._max_age,
            path="/",
            httponly=True,
            samesite="lax",
            secure=self._secure,
        )

    def destroy(self, response: Response) -> None:
        """Overwrite the cookie with an expired empty value. Idempotent."""
        response.delete_cookie(
            self.cookie_name,
            path="/",
            httponly=True,
            samesite="lax",
            secure=self._secure,
        )
