"""
tests/test_gateway.py -- Unit tests for the Gateway state machine.

The Gateway is driven directly (no HTTP) against a FakeUpstream so each
transition can be asserted on: upstream call counts, stored entries and the
X-Cache marker.

Coverage:
  - Miss -> fetch -> store; fresh hit; 304 on matching validators
  - Upstream revalidation: stored validators sent upstream, upstream 304 keeps payload
  - Stale-while-revalidate: stale payload served at once, refresh in background
  - A background refresh rejected with 401 evicts the stale entry
  - Failures never write an entry; 404 evicts
  - Concurrent requests for one uncached key share a single upstream call
  - A waiter whose leader's credential was rejected retries with its own
  - Composite resources: second-stage GETs, content ETag, no upstream revalidation
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest

from cache.conditional import content_etag
from cache.keys import fingerprint
from cache.policy import WORKFLOW_RUNS
from cache.store import CacheStore
from conftest import TEST_TOKEN, FakeUpstream, failure, ok
from core.errors import InvalidCredential, ResourceNotFound, UpstreamRejected, UpstreamUnavailable
from core.gateway import HIT, MISS, NOT_MODIFIED, STALE_HIT, Gateway, ResourceRequest
from core.models import CacheConfig, RequestValidators

PATH = "/repos/octo/hello/actions/runs"
NO_VALIDATORS = RequestValidators()

POLICIES = {
    WORKFLOW_RUNS: CacheConfig(max_age=60, server_ttl=300, stale_while_revalidate=600),
    "no_swr": CacheConfig(max_age=60, server_ttl=300),
    "short_swr": CacheConfig(max_age=60, server_ttl=3600, stale_while_revalidate=30),
}


@pytest.fixture
def gateway(store: CacheStore, upstream: FakeUpstream):
    gw = Gateway(store, upstream, policies=POLICIES, flight_wait_timeout=2.0, refresh_workers=2)
    yield gw
    gw.shutdown()


def _resource(resource: str = WORKFLOW_RUNS) -> ResourceRequest:
    return ResourceRequest(
        resource=resource,
        key=fingerprint(resource, {"owner": "octo", "repo": "hello"}, {"per_page": 50}, identity="octocat"),
        path=PATH,
        params={"per_page": 50},
    )


def _age(store: CacheStore, key: str, seconds: float) -> None:
    """Pretend the stored entry was written `seconds` ago."""
    store.put(key, replace(store.get(key), stored_at=time.time() - seconds))


def _wait_for_flight(store: CacheStore, key: str) -> None:
    deadline = time.time() + 5
    while not store.in_flight(key) and time.time() < deadline:
        time.sleep(0.01)


class TestServe:
    """Fresh-cache paths."""

    def test_miss_fetches_and_stores(self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore) -> None:
        """An uncached key is fetched, stored with retention as ttl and served as MISS."""
        upstream.script("GET", PATH, ok({"runs": [1]}, etag='"e1"'))
        resp = gateway.serve(TEST_TOKEN, _resource(), NO_VALIDATORS)
        assert resp.status_code == 200
        assert resp.body == {"runs": [1]}
        assert resp.headers["X-Cache"] == MISS
        assert resp.headers["ETag"] == '"e1"'
        entry = store.get(_resource().key)
        assert entry.payload == {"runs": [1]}
        assert entry.ttl_seconds == 660

    def test_fresh_entry_is_hit(self, gateway: Gateway, upstream: FakeUpstream) -> None:
        """A second read within max_age is a HIT and does not call upstream."""
        upstream.script("GET", PATH, ok({"runs": [1]}, etag='"e1"'))
        gateway.serve(TEST_TOKEN, _resource(), NO_VALIDATORS)
        resp = gateway.serve(TEST_TOKEN, _resource(), NO_VALIDATORS)
        assert resp.headers["X-Cache"] == HIT
        assert len(upstream.calls_to(PATH)) == 1

    def test_matching_etag_is_304(self, gateway: Gateway, upstream: FakeUpstream) -> None:
        """If-None-Match equal to the stored ETag returns 304 with an empty body."""
        upstream.script("GET", PATH, ok({"runs": [1]}, etag='"e1"'))
        gateway.serve(TEST_TOKEN, _resource(), NO_VALIDATORS)
        resp = gateway.serve(TEST_TOKEN, _resource(), RequestValidators(if_none_match='"e1"'))
        assert resp.status_code == 304
        assert resp.body is None
        assert resp.headers["X-Cache"] == NOT_MODIFIED
        assert resp.headers["ETag"] == '"e1"'
        assert len(upstream.calls_to(PATH)) == 1

    def test_validators_matching_fetched_entry_yield_304(self, gateway: Gateway, upstream: FakeUpstream) -> None:
        """Validators that match a freshly fetched entry still get a 304."""
        upstream.script("GET", PATH, ok({"runs": [1]}, etag='"e1"'))
        resp = gateway.serve(TEST_TOKEN, _resource(), RequestValidators(if_none_match='"e1"'))
        assert resp.status_code == 304
        assert len(upstream.calls_to(PATH)) == 1

    def test_transform_applied_before_store(self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore) -> None:
        """The stored payload is the transformed body, not the raw one."""
        upstream.script("GET", PATH, ok([1, 2, 3]))
        resource = ResourceRequest(
            resource=WORKFLOW_RUNS, key="k;", path=PATH, transform=lambda data: {"count": len(data)}
        )
        assert gateway.serve(TEST_TOKEN, resource, NO_VALIDATORS).body == {"count": 3}
        assert store.get("k;").payload == {"count": 3}


class TestRevalidation:
    """Upstream revalidation of stale entries."""

    def test_stale_without_swr_revalidates_upstream(
        self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore
    ) -> None:
        """A stale entry is revalidated with its stored validators; upstream 304 keeps the payload."""
        resource = _resource("no_swr")
        upstream.script(
            "GET",
            PATH,
            ok({"runs": [1]}, etag='"e1"', last_modified="Wed, 01 May 2024 10:00:00 GMT"),
            ok(None, status=304),
        )
        gateway.serve(TEST_TOKEN, resource, NO_VALIDATORS)
        _age(store, resource.key, 120)

        resp = gateway.serve(TEST_TOKEN, resource, NO_VALIDATORS)
        assert resp.status_code == 200
        assert resp.body == {"runs": [1]}
        assert resp.headers["X-Cache"] == MISS

        second_call = upstream.calls_to(PATH)[1]
        assert second_call["headers"] == {
            "If-None-Match": '"e1"',
            "If-Modified-Since": "Wed, 01 May 2024 10:00:00 GMT",
        }
        refreshed = store.get(resource.key)
        assert refreshed.age() < 5
        assert refreshed.etag == '"e1"'

    def test_revalidation_disabled_sends_no_validators(self, store: CacheStore, upstream: FakeUpstream) -> None:
        """A policy with revalidate=False refetches without conditional headers."""
        policies = {"plain": CacheConfig(max_age=60, server_ttl=300, revalidate=False)}
        gw = Gateway(store, upstream, policies=policies)
        try:
            resource = _resource("plain")
            upstream.script("GET", PATH, ok({"v": 1}, etag='"e1"'), ok({"v": 2}, etag='"e2"'))
            gw.serve(TEST_TOKEN, resource, NO_VALIDATORS)
            _age(store, resource.key, 120)
            assert gw.serve(TEST_TOKEN, resource, NO_VALIDATORS).body == {"v": 2}
            assert upstream.calls_to(PATH)[1]["headers"] is None
        finally:
            gw.shutdown()


class TestStaleWhileRevalidate:
    """Stale entries inside the SWR window."""

    def test_stale_entry_served_then_refreshed(
        self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore
    ) -> None:
        """The stale payload is served as STALE and the background refresh replaces it."""
        resource = _resource()
        upstream.script("GET", PATH, ok({"v": 1}, etag='"e1"'), ok({"v": 2}, etag='"e2"'))
        gateway.serve(TEST_TOKEN, resource, NO_VALIDATORS)
        _age(store, resource.key, 120)

        resp = gateway.serve(TEST_TOKEN, resource, NO_VALIDATORS)
        assert resp.status_code == 200
        assert resp.body == {"v": 1}
        assert resp.headers["X-Cache"] == STALE_HIT

        gateway.drain(timeout=5)
        assert store.get(resource.key).payload == {"v": 2}
        assert gateway.serve(TEST_TOKEN, resource, NO_VALIDATORS).headers["X-Cache"] == HIT

    def test_failed_background_refresh_keeps_stale_entry(
        self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore
    ) -> None:
        """A transient failure during refresh leaves the stale entry in place."""
        resource = _resource()
        upstream.script("GET", PATH, ok({"v": 1}, etag='"e1"'), failure(503))
        gateway.serve(TEST_TOKEN, resource, NO_VALIDATORS)
        _age(store, resource.key, 120)

        assert gateway.serve(TEST_TOKEN, resource, NO_VALIDATORS).body == {"v": 1}
        gateway.drain(timeout=5)
        assert store.get(resource.key).payload == {"v": 1}

    def test_rejected_background_refresh_evicts_entry(
        self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore
    ) -> None:
        """Once a refresh gets 401 the stale entry is gone and the next read raises InvalidCredential."""
        resource = _resource()
        upstream.script("GET", PATH, ok({"v": 1}, etag='"e1"'))
        gateway.serve(TEST_TOKEN, resource, NO_VALIDATORS)
        _age(store, resource.key, 120)
        upstream.revoke(TEST_TOKEN)

        assert gateway.serve(TEST_TOKEN, resource, NO_VALIDATORS).headers["X-Cache"] == STALE_HIT
        gateway.drain(timeout=5)

        assert store.get(resource.key) is None
        with pytest.raises(InvalidCredential):
            gateway.serve(TEST_TOKEN, resource, NO_VALIDATORS)

    def test_entry_beyond_swr_window_is_fetched_in_foreground(
        self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore
    ) -> None:
        """Past max_age plus the SWR window the read blocks on a fresh fetch."""
        resource = _resource("short_swr")
        upstream.script("GET", PATH, ok({"v": 1}), ok({"v": 2}))
        gateway.serve(TEST_TOKEN, resource, NO_VALIDATORS)
        _age(store, resource.key, 120)

        resp = gateway.serve(TEST_TOKEN, resource, NO_VALIDATORS)
        assert resp.body == {"v": 2}
        assert resp.headers["X-Cache"] == MISS


class TestFailures:
    """Upstream failures are translated and never cached."""

    @pytest.mark.parametrize(
        "scripted, expected",
        [
            (failure(401), InvalidCredential),
            (failure(404), ResourceNotFound),
            (failure(403), UpstreamRejected),
            (failure(500), UpstreamUnavailable),
            (failure(None), UpstreamUnavailable),
        ],
    )
    def test_failure_is_translated_and_not_stored(
        self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore, scripted, expected
    ) -> None:
        """Each failure kind maps to its GatewayError and leaves the store empty."""
        upstream.script("GET", PATH, scripted)
        with pytest.raises(expected):
            gateway.serve(TEST_TOKEN, _resource(), NO_VALIDATORS)
        assert store.get(_resource().key) is None
        assert len(store) == 0

    def test_failure_does_not_overwrite_entry(self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore) -> None:
        """A failed foreground fetch leaves the previous entry untouched."""
        upstream.script("GET", PATH, ok({"v": 1}, etag='"e1"'), failure(500))
        gateway.serve(TEST_TOKEN, _resource(), NO_VALIDATORS)
        before = store.get(_resource().key)
        with pytest.raises(UpstreamUnavailable):
            gateway.serve(TEST_TOKEN, _resource(), RequestValidators(if_none_match='"nope"'))
        assert store.get(_resource().key) is before

    def test_rejected_status_is_kept(self, gateway: Gateway, upstream: FakeUpstream) -> None:
        """An upstream 422 surfaces with its original status."""
        upstream.script("GET", PATH, failure(422))
        with pytest.raises(UpstreamRejected) as exc_info:
            gateway.serve(TEST_TOKEN, _resource(), NO_VALIDATORS)
        assert exc_info.value.status_code == 422


class TestSingleFlight:
    """Concurrent reads of one key."""

    def test_concurrent_misses_share_one_upstream_call(self, gateway: Gateway, upstream: FakeUpstream) -> None:
        """Eight concurrent misses make one upstream call and all get its body."""
        upstream.script("GET", PATH, ok({"runs": [1, 2]}, etag='"e1"'))
        upstream.gate = threading.Event()
        n = 8

        with ThreadPoolExecutor(max_workers=n) as pool:
            futures = [pool.submit(gateway.serve, TEST_TOKEN, _resource(), NO_VALIDATORS) for _ in range(n)]
            deadline = time.time() + 5
            while not upstream.calls_to(PATH) and time.time() < deadline:
                time.sleep(0.01)
            # Let the waiters pile up behind the single in-flight fetch.
            time.sleep(0.2)
            upstream.gate.set()
            results = [f.result(timeout=5) for f in futures]

        assert len(upstream.calls_to(PATH)) == 1
        assert all(r.status_code == 200 for r in results)
        assert all(r.body == {"runs": [1, 2]} for r in results)

    def test_waiters_receive_the_leaders_failure(self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore) -> None:
        """A transient leader failure is shared by every waiter without further calls."""
        upstream.script("GET", PATH, failure(502))
        upstream.gate = threading.Event()

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(gateway.serve, TEST_TOKEN, _resource(), NO_VALIDATORS) for _ in range(4)]
            time.sleep(0.2)
            upstream.gate.set()
            for f in futures:
                with pytest.raises(UpstreamUnavailable):
                    f.result(timeout=5)

        assert len(upstream.calls_to(PATH)) == 1
        assert len(store) == 0

    def test_waiter_retries_after_leaders_credential_is_rejected(
        self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore
    ) -> None:
        """A waiter whose leader got 401 fetches again with its own valid credential."""
        upstream.script("GET", PATH, ok({"v": 1}))
        upstream.gate = threading.Event()

        with ThreadPoolExecutor(max_workers=2) as pool:
            leader = pool.submit(gateway.serve, "ghp_revoked", _resource(), NO_VALIDATORS)
            _wait_for_flight(store, _resource().key)
            waiter = pool.submit(gateway.serve, TEST_TOKEN, _resource(), NO_VALIDATORS)
            time.sleep(0.2)
            upstream.gate.set()

            with pytest.raises(InvalidCredential):
                leader.result(timeout=5)
            resp = waiter.result(timeout=5)

        assert resp.status_code == 200
        assert resp.body == {"v": 1}
        assert len(upstream.calls_to(PATH)) == 2
        assert store.get(_resource().key).payload == {"v": 1}

    def test_waiter_times_out_independently(self, store: CacheStore, upstream: FakeUpstream) -> None:
        """A waiter past flight_wait_timeout gets UpstreamUnavailable while the leader completes."""
        gw = Gateway(store, upstream, policies=POLICIES, flight_wait_timeout=0.1)
        upstream.script("GET", PATH, ok({"v": 1}))
        upstream.gate = threading.Event()
        try:
            with ThreadPoolExecutor(max_workers=2) as pool:
                leader = pool.submit(gw.serve, TEST_TOKEN, _resource(), NO_VALIDATORS)
                _wait_for_flight(store, _resource().key)
                waiter = pool.submit(gw.serve, TEST_TOKEN, _resource(), NO_VALIDATORS)
                with pytest.raises(UpstreamUnavailable):
                    waiter.result(timeout=5)
                upstream.gate.set()
                assert leader.result(timeout=5).body == {"v": 1}
        finally:
            gw.shutdown()
        assert store.get(_resource().key).payload == {"v": 1}


class TestComposite:
    """Resources completed by a second stage of upstream GETs."""

    DETAIL = "/repos/octo/hello/detail"

    def _composite(self) -> ResourceRequest:
        def expand(get, payload):
            return {**payload, "detail": get(self.DETAIL, {"x": 1})}

        return replace(_resource("no_swr"), expand=expand)

    def test_expand_runs_with_callers_credential(self, gateway: Gateway, upstream: FakeUpstream) -> None:
        """The second stage sees the transformed payload and its GETs reach upstream."""
        upstream.script("GET", PATH, ok({"runs": [1]}, etag='"upstream"'))
        upstream.script("GET", self.DETAIL, ok({"d": 1}))

        resp = gateway.serve(TEST_TOKEN, self._composite(), NO_VALIDATORS)
        assert resp.body == {"runs": [1], "detail": {"d": 1}}
        assert resp.headers["ETag"] == content_etag({"runs": [1], "detail": {"d": 1}})
        assert upstream.calls_to(self.DETAIL)[0]["params"] == {"x": 1}

    def test_composite_entry_is_refetched_without_validators(
        self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore
    ) -> None:
        """A stale composite entry is fetched in full; its ETag is never sent upstream."""
        resource = self._composite()
        upstream.script("GET", PATH, ok({"runs": [1]}, etag='"upstream"'))
        upstream.script("GET", self.DETAIL, ok({"d": 1}), ok({"d": 2}))
        gateway.serve(TEST_TOKEN, resource, NO_VALIDATORS)
        _age(store, resource.key, 120)

        resp = gateway.serve(TEST_TOKEN, resource, NO_VALIDATORS)
        assert resp.body["detail"] == {"d": 2}
        assert upstream.calls_to(PATH)[1]["headers"] is None

    def test_expand_failure_is_not_stored(self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore) -> None:
        """A failing second-stage GET fails the whole read and stores nothing."""
        upstream.script("GET", PATH, ok({"runs": [1]}))
        upstream.script("GET", self.DETAIL, failure(500))
        with pytest.raises(UpstreamUnavailable):
            gateway.serve(TEST_TOKEN, self._composite(), NO_VALIDATORS)
        assert len(store) == 0


class TestMutate:
    """Uncached writes."""

    def test_mutation_invalidates_prefixes(self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore) -> None:
        """A successful write drops every entry under the given prefixes."""
        upstream.script("GET", PATH, ok({"v": 1}))
        upstream.script("POST", "/repos/octo/hello/actions/runs/1/rerun", ok(None, status=201))
        gateway.serve(TEST_TOKEN, _resource(), NO_VALIDATORS)

        gateway.mutate(
            TEST_TOKEN,
            "POST",
            "/repos/octo/hello/actions/runs/1/rerun",
            invalidate=["workflow_runs:owner=octo/repo=hello;"],
        )
        assert len(store) == 0

    def test_failed_mutation_keeps_cache(self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore) -> None:
        """A rejected write invalidates nothing."""
        upstream.script("GET", PATH, ok({"v": 1}))
        upstream.script("POST", "/repos/octo/hello/pulls", failure(422))
        gateway.serve(TEST_TOKEN, _resource(), NO_VALIDATORS)
        with pytest.raises(UpstreamRejected):
            gateway.mutate(TEST_TOKEN, "POST", "/repos/octo/hello/pulls", invalidate=["workflow_runs:"])
        assert len(store) == 1

    def test_mutation_during_read_discards_the_read(
        self, gateway: Gateway, upstream: FakeUpstream, store: CacheStore
    ) -> None:
        """A read in flight when a write lands is served but not stored."""
        rerun = "/repos/octo/hello/actions/runs/1/rerun"
        upstream.script("GET", PATH, ok({"v": "before"}))
        upstream.script("POST", rerun, ok(None, status=201))
        upstream.gate = threading.Event()

        with ThreadPoolExecutor(max_workers=2) as pool:
            read = pool.submit(gateway.serve, TEST_TOKEN, _resource(), NO_VALIDATORS)
            _wait_for_flight(store, _resource().key)
            write = pool.submit(
                gateway.mutate, TEST_TOKEN, "POST", rerun, invalidate=["workflow_runs:owner=octo/repo=hello;"]
            )
            # The write is held at the gate too; the invalidation runs after it returns.
            upstream.gate.set()
            write.result(timeout=5)
            read.result(timeout=5)

        # Either the read finished first and was evicted, or it was discarded.
        assert store.get(_resource().key) is None
