"""
cache/keys.py -- Cache key (fingerprint) construction.

A fingerprint is a deterministic string built from the resource class, the
route's path parameters and the query parameters that shape the upstream
response. The credential is never part of it.

Format:
    <resource>:<name>=<value>/<name>=<value>;?<query>[@<identity>]

Path parameters keep their declared order so prefixes are meaningful:
invalidate_by_prefix(resource_prefix("workflow_runs", owner=..., repo=...))
drops every page/filter variant of one repository's run list. Query
parameters are sorted and URL-encoded; None values are omitted so
"?page=1" and "?page=1&status=" fingerprint the same way.

Per-user resources (personal repository and organisation lists) must pass the
acting identity; those keys are suffixed with "@<login>" so two users never
share an entry.
"""

from __future__ import annotations

from typing import Any, Optional
from urllib.parse import quote, urlencode


def _part(value: Any) -> str:
    return quote(str(value).lower(), safe="")


def resource_prefix(resource: str, **path_params: Any) -> str:
    """Key prefix covering every query variant of one resource instance."""
    parts = "/".join(f"{name}={_part(value)}" for name, value in path_params.items())
    return f"{resource}:{parts};"


def fingerprint(
    resource: str,
    path_params: Optional[dict[str, Any]] = None,
    query: Optional[dict[str, Any]] = None,
    identity: Optional[str] = None,
) -> str:
    key = resource_prefix(resource, **(path_params or {}))
    relevant = sorted((k, str(v)) for k, v in (query or {}).items() if v is not None and v != "")
    if relevant:
        key = f"{key}?{urlencode(relevant)}"
    if identity:
        key = f"{key}@{_part(identity)}"
    return key
