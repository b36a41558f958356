"""
upstream.py -- All calls to the GitHub REST API.

This is the translation boundary: every outcome of a requests call is turned
into either an UpstreamResponse (2xx / 304) or an UpstreamFailureError carrying
a tagged UpstreamFailure. Nothing above this module sees a raw
requests exception or response object.

The credential is passed per call and only ever placed in the Authorization
header. It is never logged and never stored on the client.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from core.config import Settings, get_settings
from core.errors import FailureKind, UpstreamFailure, UpstreamFailureError
from core.models import Identity, UpstreamResponse

logger = logging.getLogger("hubgate.upstream")

# Warn when fewer than this many requests remain in the upstream rate-limit window.
_RATE_LIMIT_WARN_AT = 100


class GitHubClient:
    """Thin, stateless wrapper around a pooled requests.Session.

    The session is shared across threads for connection pooling. max_redirects
    is lowered from the requests default of 30 -- the API is a known host and
    a long redirect chain is never legitimate.
    """

    def __init__(self, settings: Optional[Settings] = None, session: Optional[requests.Session] = None) -> None:
        self._settings = settings or get_settings()
        self._base_url = self._settings.github_api_url.rstrip("/")
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    def close(self) -> None:
        self._session.close()

    def authenticated_request(
        self,
        credential: str,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        *,
        json: Any = None,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> UpstreamResponse:
        """Issue one request on behalf of the credential holder.

        Args:
            credential: Bearer token from the verified session.
            method:     HTTP method, e.g. "GET".
            path:       API path beginning with "/", e.g. "/user/orgs".
            params:     Query parameters; None values are dropped.
            json:       Optional JSON body for mutating calls.
            headers:    Extra request headers (conditional validators).
            timeout:    Seconds; falls back to Settings.upstream_timeout.

        Returns an UpstreamResponse for 2xx and 304. A text/* body is returned
        as a str, anything else is decoded as JSON.

        Raises:
            UpstreamFailureError: 401 -> INVALID_CREDENTIAL, 404 -> NOT_FOUND,
                any other status or a network failure -> UPSTREAM_ERROR,
                an undecodable body -> UNKNOWN.
        """
        request_headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {credential}",
            "User-Agent": self._settings.user_agent,
            "X-GitHub-Api-Version": self._settings.github_api_version,
        }
        if headers:
            request_headers.update(headers)
        query = {k: v for k, v in (params or {}).items() if v is not None}

        try:
            resp = self._session.request(
                method,
                f"{self._base_url}{path}",
                params=query,
                json=json,
                headers=request_headers,
                timeout=timeout or self._settings.upstream_timeout,
            )
        except requests.RequestException as e:
            logger.warning("%s %s failed: %s", method, path, type(e).__name__)
            raise UpstreamFailureError(UpstreamFailure(FailureKind.UPSTREAM_ERROR), path) from e

        self._check_rate_limit(resp, path)

        if resp.status_code == 304:
            return UpstreamResponse(
                status=304,
                data=None,
                etag=resp.headers.get("ETag"),
                last_modified=resp.headers.get("Last-Modified"),
            )
        if not 200 <= resp.status_code < 300:
            logger.info("%s %s -> %d", method, path, resp.status_code)
            raise UpstreamFailureError(UpstreamFailure.from_status(resp.status_code), path)

        content_type = resp.headers.get("Content-Type") or ""
        try:
            if content_type.startswith("text/"):
                # Job logs: plain text, served after a redirect to blob storage.
                data = resp.text
            else:
                data = resp.json() if resp.content else None
        except ValueError as e:
            logger.warning("%s %s returned an undecodable body", method, path)
            raise UpstreamFailureError(UpstreamFailure(FailureKind.UNKNOWN, resp.status_code), path) from e

        return UpstreamResponse(
            status=resp.status_code,
            data=data,
            etag=resp.headers.get("ETag"),
            last_modified=resp.headers.get("Last-Modified"),
        )

    def whoami(self, credential: str, timeout: Optional[float] = None) -> Identity:
        """Exchange a credential for the identity it belongs to (GET /user)."""
        resp = self.authenticated_request(credential, "GET", "/user", timeout=timeout)
        user = resp.data or {}
        if not user.get("login"):
            raise UpstreamFailureError(UpstreamFailure(FailureKind.UNKNOWN, resp.status), "/user")
        return Identity(
            login=user["login"],
            id=user.get("id"),
            name=user.get("name"),
            avatar_url=user.get("avatar_url"),
        )

    @staticmethod
    def _check_rate_limit(resp: requests.Response, path: str) -> None:
        remaining = resp.headers.get("X-RateLimit-Remaining")
        if remaining is None:
            return
        try:
            left = int(remaining)
        except ValueError:
            return
        if left < _RATE_LIMIT_WARN_AT:
            logger.warning("GitHub rate limit low: %d requests remaining (last call %s)", left, path)
