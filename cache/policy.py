"""
cache/policy.py -- Per-resource-class cache configuration.

CACHE_POLICIES is the process-wide, read-only table of CacheConfig values.
CacheControl renders the Cache-Control header sent with every cached
resource response and 304.

Responses are "private": they are produced for one authenticated browser and
must not be stored by shared proxies.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

from core.models import CacheConfig


class DirectiveType(Enum):
    MAX_AGE = "max-age"
    NO_STORE = "no-store"
    PRIVATE = "private"
    STALE_WHILE_REVALIDATE = "stale-while-revalidate"


class CacheControl:
    def __init__(self) -> None:
        self.directives: list[str] = []

    def add(self, directive: DirectiveType, value: Optional[int] = None) -> "CacheControl":
        if value is not None:
            self.directives.append(f"{directive.value}={value}")
        else:
            self.directives.append(directive.value)
        return self

    def __str__(self) -> str:
        return ", ".join(self.directives)


ORGANIZATIONS = "organizations"
REPOSITORIES = "repositories"
WORKFLOW_RUNS = "workflow_runs"
WORKFLOW_RUN = "workflow_run"
RUN_JOBS = "run_jobs"
JOB_LOGS = "job_logs"
WORKFLOWS = "workflows"
COMMIT_STATUS = "commit_status"
BRANCHES = "branches"
PULL_REQUESTS = "pull_requests"
CONTENTS = "contents"

CACHE_POLICIES: Mapping[str, CacheConfig] = MappingProxyType(
    {
        ORGANIZATIONS: CacheConfig(max_age=600, server_ttl=14400, stale_while_revalidate=86400),
        REPOSITORIES: CacheConfig(max_age=300, server_ttl=3600, stale_while_revalidate=86400),
        WORKFLOW_RUNS: CacheConfig(max_age=120, server_ttl=300, stale_while_revalidate=3600),
        WORKFLOW_RUN: CacheConfig(max_age=30, server_ttl=120, stale_while_revalidate=600),
        RUN_JOBS: CacheConfig(max_age=60, server_ttl=120, stale_while_revalidate=3600),
        JOB_LOGS: CacheConfig(max_age=10, server_ttl=60, timeout=30.0),
        WORKFLOWS: CacheConfig(max_age=300, server_ttl=900, stale_while_revalidate=3600),
        COMMIT_STATUS: CacheConfig(max_age=30, server_ttl=120, stale_while_revalidate=300),
        BRANCHES: CacheConfig(max_age=300, server_ttl=900, stale_while_revalidate=86400),
        PULL_REQUESTS: CacheConfig(max_age=60, server_ttl=180, stale_while_revalidate=3600),
        CONTENTS: CacheConfig(max_age=300, server_ttl=900),
    }
)


def cache_control_for(config: CacheConfig) -> str:
    header = CacheControl().add(DirectiveType.PRIVATE).add(DirectiveType.MAX_AGE, config.max_age)
    if config.allows_stale:
        header.add(DirectiveType.STALE_WHILE_REVALIDATE, config.stale_while_revalidate)
    return str(header)


NO_STORE = str(CacheControl().add(DirectiveType.NO_STORE))
