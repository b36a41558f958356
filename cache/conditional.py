"""
cache/conditional.py -- Conditional request evaluation.

Pure classification: compares the inbound validators with a stored entry and
returns a Decision. No I/O, no mutation; the gateway acts on the result.

Rules, in order:
  1. No entry                             -> MUST_FETCH("miss")
  2. Entry older than max_age             -> MUST_FETCH("stale")
  3. Fresh, entry has an ETag:
       If-None-Match matches              -> NOT_MODIFIED
  4. Fresh, entry has no ETag but a Last-Modified:
       Last-Modified <= If-Modified-Since -> NOT_MODIFIED
  5. Fresh, request carried no validators -> SERVE_CACHED
  6. Otherwise                            -> MUST_FETCH("validator mismatch")

ETag comparison is byte-exact. Weak comparison (ignoring the W/ prefix) is
used only when the stored ETag is itself weak. If-None-Match may list several
tags separated by commas, or be "*".

Entries assembled from several upstream calls have no single upstream ETag;
content_etag() derives a weak one from the stored payload.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

from core.models import CacheEntry, Decision, DecisionKind, RequestValidators

MISS = "miss"
STALE = "stale"
MISMATCH = "validator mismatch"

_WEAK_PREFIX = "W/"


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an HTTP-date header value. None for absent or malformed input."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def content_etag(payload: object) -> str:
    """Weak ETag over the JSON form of payload. Equal payloads get equal tags."""
    digest = hashlib.sha1(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()
    return f'W/"{digest[:32]}"'


def _split_tags(header: str) -> list[str]:
    return [tag.strip() for tag in header.split(",") if tag.strip()]


def etag_matches(stored: str, if_none_match: str) -> bool:
    candidates = _split_tags(if_none_match)
    if "*" in candidates:
        return True
    if stored.startswith(_WEAK_PREFIX):
        opaque = stored[len(_WEAK_PREFIX) :]
        return any(c == stored or c.removeprefix(_WEAK_PREFIX) == opaque for c in candidates)
    return stored in candidates


def not_modified_since(last_modified: str, if_modified_since: str) -> bool:
    stored = parse_http_date(last_modified)
    client = parse_http_date(if_modified_since)
    if stored is None or client is None:
        return False
    return stored <= client


class ConditionalEvaluator:
    """Stateless; one instance can be shared by every request."""

    def decide(
        self,
        validators: RequestValidators,
        entry: Optional[CacheEntry],
        max_age: int,
        now: Optional[float] = None,
    ) -> Decision:
        if entry is None:
            return Decision(DecisionKind.MUST_FETCH, MISS)
        if entry.age(now) >= max_age:
            return Decision(DecisionKind.MUST_FETCH, STALE)

        if entry.etag:
            if validators.if_none_match and etag_matches(entry.etag, validators.if_none_match):
                return Decision(DecisionKind.NOT_MODIFIED)
        elif entry.last_modified and validators.if_modified_since:
            if not_modified_since(entry.last_modified, validators.if_modified_since):
                return Decision(DecisionKind.NOT_MODIFIED)

        if not validators.present:
            return Decision(DecisionKind.SERVE_CACHED)
        return Decision(DecisionKind.MUST_FETCH, MISMATCH)
