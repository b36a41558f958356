"""
core/gateway.py -- Per-request orchestration of cache, conditional checks and upstream.

State machine for a cached GET (the credential has already been resolved by
the CredentialGate; an unauthenticated request never reaches this module):

    CACHE_CHECKED --NOT_MODIFIED--> SERVE_304        empty body, stored validators
                  --SERVE_CACHED--> SERVE_200        fresh entry, no validators sent
                  --stale + SWR---> SERVE_STALE      stored payload now, refresh in background
                  --MUST_FETCH----> FETCH_UPSTREAM   single-flight fetch, store, 200 (or 304)

FETCH_UPSTREAM never writes an entry for a failed call. An upstream 404
evicts any stale entry for the key. Upstream failures are translated here,
once, into GatewayError subclasses; the raw failure never reaches a response.

Background refreshes run on a ThreadPoolExecutor owned by the Gateway and go
through CacheStore.fetch(), so they share single-flight deduplication with
foreground fetches. Their futures are tracked until done. A refresh whose
credential is rejected evicts the entry: the next request for the key then
fetches in the foreground and receives the 401 itself.

A shared fetch runs under the leader's credential. A waiter that receives
the leader's credential rejection retries once with its own credential, so
one revoked token cannot end another session of the same user.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field, replace
from typing import Any, Optional, Protocol

from cache.conditional import STALE, ConditionalEvaluator, content_etag
from cache.policy import CACHE_POLICIES, cache_control_for
from cache.store import CacheStore
from core.errors import (
    FailureKind,
    GatewayError,
    InvalidCredential,
    ResourceNotFound,
    UpstreamFailureError,
    translate_failure,
)
from core.models import CacheConfig, CacheEntry, DecisionKind, RequestValidators, UpstreamResponse

logger = logging.getLogger("hubgate.gateway")

# Values of the X-Cache response header.
HIT = "HIT"
MISS = "MISS"
STALE_HIT = "STALE"
NOT_MODIFIED = "NOT-MODIFIED"


class Upstream(Protocol):
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
    ) -> UpstreamResponse: ...


def _identity(data: Any) -> Any:
    return data


# get(path, params=None) -> decoded body of an authenticated upstream GET.
UpstreamGet = Callable[..., Any]


@dataclass(frozen=True)
class ResourceRequest:
    """One cacheable upstream GET.

    resource:  resource class, a key of the policy table.
    key:       fingerprint from cache.keys.fingerprint().
    path:      upstream API path.
    params:    upstream query parameters.
    transform: applied to the upstream body before it is stored.
    expand:    optional second stage, called as expand(get, transformed) to
               complete the payload with further upstream GETs. An expanded
               entry carries a content-derived ETag and is never revalidated
               upstream.
    """

    resource: str
    key: str
    path: str
    params: Mapping[str, Any] = field(default_factory=dict)
    transform: Callable[[Any], Any] = _identity
    expand: Optional[Callable[[UpstreamGet, Any], Any]] = None


@dataclass
class GatewayResponse:
    status_code: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)


class Gateway:
    def __init__(
        self,
        store: CacheStore,
        upstream: Upstream,
        evaluator: Optional[ConditionalEvaluator] = None,
        policies: Mapping[str, CacheConfig] = CACHE_POLICIES,
        *,
        upstream_timeout: float = 5.0,
        flight_wait_timeout: float = 10.0,
        refresh_workers: int = 4,
    ) -> None:
        self.store = store
        self._upstream = upstream
        self._evaluator = evaluator or ConditionalEvaluator()
        self._policies = policies
        self._upstream_timeout = upstream_timeout
        self._flight_wait_timeout = flight_wait_timeout
        self._executor = ThreadPoolExecutor(max_workers=refresh_workers, thread_name_prefix="hubgate-refresh")
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Cached reads
    # ------------------------------------------------------------------

    def serve(self, credential: str, resource: ResourceRequest, validators: RequestValidators) -> GatewayResponse:
        config = self._policies[resource.resource]
        entry = self.store.get(resource.key)
        decision = self._evaluator.decide(validators, entry, config.max_age)

        if decision.kind is DecisionKind.NOT_MODIFIED:
            return self._not_modified(entry, config)
        if decision.kind is DecisionKind.SERVE_CACHED:
            return self._ok(entry, config, HIT)

        if decision.reason == STALE and config.allows_stale and entry.age() < config.max_age + config.stale_while_revalidate:
            self._refresh_in_background(credential, resource, config, entry)
            return self._ok(entry, config, STALE_HIT)

        logger.debug("Fetching %s (%s)", resource.key, decision.reason)
        fresh = self._fetch(credential, resource, config, seen=entry)
        if self._evaluator.decide(validators, fresh, config.max_age).kind is DecisionKind.NOT_MODIFIED:
            return self._not_modified(fresh, config)
        return self._ok(fresh, config, MISS)

    def _fetch(
        self,
        credential: str,
        resource: ResourceRequest,
        config: CacheConfig,
        seen: Optional[CacheEntry],
        retry_shared: bool = True,
    ) -> CacheEntry:
        timeout = config.timeout or self._upstream_timeout
        attempted = False

        def get(path: str, params: Optional[dict[str, Any]] = None) -> Any:
            return self._upstream.authenticated_request(credential, "GET", path, params, timeout=timeout).data

        def load() -> CacheEntry:
            nonlocal attempted
            attempted = True
            headers: dict[str, str] = {}
            if config.revalidate and seen is not None and resource.expand is None:
                if seen.etag:
                    headers["If-None-Match"] = seen.etag
                if seen.last_modified:
                    headers["If-Modified-Since"] = seen.last_modified
            resp = self._upstream.authenticated_request(
                credential,
                "GET",
                resource.path,
                dict(resource.params),
                headers=headers or None,
                timeout=timeout,
            )
            now = time.time()
            if resp.not_modified and seen is not None:
                logger.debug("Upstream revalidated %s", resource.key)
                return replace(
                    seen,
                    etag=resp.etag or seen.etag,
                    last_modified=resp.last_modified or seen.last_modified,
                    stored_at=now,
                    ttl_seconds=config.retention,
                )
            payload = resource.transform(resp.data)
            etag, last_modified = resp.etag, resp.last_modified
            if resource.expand is not None:
                payload = resource.expand(get, payload)
                etag, last_modified = content_etag(payload), None
            return CacheEntry(
                key=resource.key,
                payload=payload,
                etag=etag,
                last_modified=last_modified,
                stored_at=now,
                ttl_seconds=config.retention,
            )

        try:
            return self.store.fetch(resource.key, load, timeout=self._flight_wait_timeout, seen=seen)
        except UpstreamFailureError as e:
            if e.failure.kind is FailureKind.INVALID_CREDENTIAL and not attempted and retry_shared:
                # Rejected credential belonged to the leader of a shared fetch.
                logger.debug("Shared fetch of %s was rejected; retrying with this caller's credential", resource.key)
                return self._fetch(credential, resource, config, seen, retry_shared=False)
            error = translate_failure(e.failure)
            if isinstance(error, ResourceNotFound):
                self.store.invalidate(resource.key)
            log = logger.warning if e.failure.transient else logger.info
            log(
                "Upstream fetch for %s failed: %s (status %s)",
                resource.key,
                e.failure.kind.value,
                e.failure.status,
            )
            raise error from e

    def _refresh_in_background(
        self,
        credential: str,
        resource: ResourceRequest,
        config: CacheConfig,
        seen: CacheEntry,
    ) -> None:
        if self.store.in_flight(resource.key):
            return
        future = self._executor.submit(self._refresh, credential, resource, config, seen)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(lambda f: self._refresh_done(resource.key, f))

    def _refresh(self, credential: str, resource: ResourceRequest, config: CacheConfig, seen: CacheEntry) -> CacheEntry:
        try:
            return self._fetch(credential, resource, config, seen)
        except InvalidCredential:
            # A cached 200 must not outlive a rejected credential.
            self.store.invalidate(resource.key)
            raise

    def _refresh_done(self, key: str, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        exc = future.exception()
        if exc is None:
            return
        if isinstance(exc, GatewayError):
            logger.info("Background refresh of %s failed: %s", key, exc.code)
        else:
            logger.error("Background refresh of %s raised", key, exc_info=exc)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until every scheduled background refresh has finished."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            wait_futures(pending, timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Uncached writes
    # ------------------------------------------------------------------

    def mutate(
        self,
        credential: str,
        method: str,
        path: str,
        *,
        json: Any = None,
        invalidate: Iterable[str] = (),
    ) -> Any:
        """Forward a write upstream, then drop the cached read views it affects."""
        try:
            resp = self._upstream.authenticated_request(
                credential, method, path, json=json, timeout=self._upstream_timeout
            )
        except UpstreamFailureError as e:
            logger.warning("Upstream %s %s failed: %s (status %s)", method, path, e.failure.kind.value, e.failure.status)
            raise translate_failure(e.failure) from e
        for prefix in invalidate:
            self.store.invalidate_by_prefix(prefix)
        return resp.data

    # ------------------------------------------------------------------
    # Response construction
    # ------------------------------------------------------------------

    @staticmethod
    def _validator_headers(entry: CacheEntry, config: CacheConfig) -> dict[str, str]:
        headers = {"Cache-Control": cache_control_for(config)}
        if entry.etag:
            headers["ETag"] = entry.etag
        if entry.last_modified:
            headers["Last-Modified"] = entry.last_modified
        return headers

    def _ok(self, entry: CacheEntry, config: CacheConfig, cache_state: str) -> GatewayResponse:
        headers = self._validator_headers(entry, config)
        headers["X-Cache"] = cache_state
        return GatewayResponse(status_code=200, body=entry.payload, headers=headers)

    def _not_modified(self, entry: CacheEntry, config: CacheConfig) -> GatewayResponse:
        headers = self._validator_headers(entry, config)
        headers["X-Cache"] = NOT_MODIFIED
        return GatewayResponse(status_code=304, body=None, headers=headers)
