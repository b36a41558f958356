"""
core/actions.py -- Workflow run, job, log and commit status shaping.

Turns raw GitHub Actions payloads into the stable shape the browser client
consumes, and sanitises the run-list query before it is forwarded upstream or
folded into a cache key. No I/O of its own: the commit status helpers only
call the upstream getter the gateway hands them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from core.errors import FailureKind, UpstreamFailureError, ValidationFailure

logger = logging.getLogger("hubgate.actions")

# Status vocabulary accepted by GET /repos/{owner}/{repo}/actions/runs.
RUN_STATUSES = frozenset(
    {
        "action_required",
        "cancelled",
        "completed",
        "failure",
        "in_progress",
        "neutral",
        "pending",
        "queued",
        "requested",
        "skipped",
        "stale",
        "success",
        "timed_out",
        "waiting",
    }
)

DEFAULT_PER_PAGE = 20
MAX_PER_PAGE = 100


@dataclass(frozen=True)
class RunQuery:
    page: int = 1
    per_page: int = DEFAULT_PER_PAGE
    status: Optional[str] = None
    event: Optional[str] = None
    branch: Optional[str] = None
    actor: Optional[str] = None
    workflow_id: Optional[int] = None
    search: Optional[str] = None

    def upstream_params(self) -> dict[str, Any]:
        """Parameters forwarded to GitHub. workflow_id and search are applied locally."""
        return {
            "page": self.page,
            "per_page": self.per_page,
            "status": self.status,
            "event": self.event,
            "branch": self.branch,
            "actor": self.actor,
        }

    def key_params(self) -> dict[str, Any]:
        return {**self.upstream_params(), "workflow_id": self.workflow_id, "search": self.search}


def _positive_int(name: str, raw: Optional[str], default: int) -> int:
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValidationFailure(f"{name} must be an integer.") from e
    if value < 1:
        raise ValidationFailure(f"{name} must be at least 1.")
    return value


def sanitize_run_query(params: dict[str, str], default_per_page: int = DEFAULT_PER_PAGE) -> RunQuery:
    """Build a RunQuery from raw query parameters.

    per_page is clamped to 100. An unknown status is dropped rather than
    rejected, matching what the upstream list endpoint tolerates.
    """
    status = params.get("status") or None
    workflow_id = params.get("workflow_id") or None
    return RunQuery(
        page=_positive_int("page", params.get("page"), 1),
        per_page=min(_positive_int("per_page", params.get("per_page"), default_per_page), MAX_PER_PAGE),
        status=status if status in RUN_STATUSES else None,
        event=params.get("event") or None,
        branch=params.get("branch") or None,
        actor=params.get("actor") or None,
        workflow_id=_positive_int("workflow_id", workflow_id, 0) if workflow_id else None,
        search=params.get("search") or None,
    )


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def duration_ms(start: Optional[str], end: Optional[str]) -> Optional[int]:
    started, ended = _parse_iso(start), _parse_iso(end)
    if started is None or ended is None:
        return None
    return max(0, int((ended - started).total_seconds() * 1000))


def filter_runs(runs: list[dict], workflow_id: Optional[int] = None, search: Optional[str] = None) -> list[dict]:
    filtered = runs
    if workflow_id is not None:
        filtered = [r for r in filtered if r.get("workflow_id") == workflow_id]
    if search:
        q = search.lower()
        fields = ("name", "display_title", "head_branch", "head_sha")
        filtered = [r for r in filtered if any(q in (r.get(f) or "").lower() for f in fields)]
    return filtered


def map_run(run: dict) -> dict:
    start = run.get("run_started_at") or run.get("created_at")
    end = run.get("updated_at") or run.get("completed_at") or run.get("created_at")
    actor = run.get("actor")
    return {
        "id": run.get("id"),
        "name": run.get("name") or run.get("display_title") or "workflow",
        "run_number": run.get("run_number"),
        "run_attempt": run.get("run_attempt"),
        "status": run.get("status"),
        "conclusion": run.get("conclusion"),
        "event": run.get("event"),
        "head_branch": run.get("head_branch"),
        "head_sha": run.get("head_sha"),
        "created_at": run.get("created_at"),
        "run_started_at": run.get("run_started_at"),
        "updated_at": run.get("updated_at"),
        "duration_ms": duration_ms(start, end),
        "actor": (
            {"login": actor.get("login"), "avatar_url": actor.get("avatar_url"), "html_url": actor.get("html_url")}
            if actor
            else None
        ),
        "workflow_id": run.get("workflow_id"),
        "html_url": run.get("html_url"),
    }


def build_runs_page(data: Optional[dict], query: RunQuery) -> dict:
    """Shape one page of workflow runs for the client."""
    raw_runs = (data or {}).get("workflow_runs") or []
    mapped = [map_run(r) for r in filter_runs(raw_runs, query.workflow_id, query.search)]
    return {
        "runs": mapped,
        "workflow_runs": mapped,
        "page": query.page,
        "per_page": query.per_page,
        # Heuristic: a full upstream page suggests another one exists.
        "hasNextPage": len(raw_runs) == query.per_page,
        "count": len(mapped),
    }


def map_job(job: dict) -> dict:
    steps = job.get("steps")
    return {
        "id": job.get("id"),
        "name": job.get("name"),
        "status": job.get("status"),
        "conclusion": job.get("conclusion"),
        "started_at": job.get("started_at") or None,
        "completed_at": job.get("completed_at") or None,
        "run_id": job.get("run_id"),
        "html_url": job.get("html_url"),
        "steps": (
            [
                {
                    "number": s.get("number"),
                    "name": s.get("name"),
                    "status": s.get("status"),
                    "conclusion": s.get("conclusion"),
                    "started_at": s.get("started_at") or None,
                    "completed_at": s.get("completed_at") or None,
                }
                for s in steps
            ]
            if steps is not None
            else None
        ),
        "runner_name": job.get("runner_name"),
        "runner_group_id": job.get("runner_group_id"),
        "attempt": job.get("run_attempt"),
    }


def build_jobs_page(data: Optional[dict]) -> dict:
    jobs = [map_job(j) for j in (data or {}).get("jobs") or []]
    return {"jobs": jobs, "total_count": len(jobs)}


def build_run(data: Optional[dict]) -> dict:
    """One workflow run, with the API URL of its log archive."""
    run = data or {}
    return {**map_run(run), "logs_url": run.get("logs_url"), "jobs_url": run.get("jobs_url")}


# ---------------------------------------------------------------------------
# Job logs
# ---------------------------------------------------------------------------


def build_log_chunk(data: Any, offset: int = 0) -> dict:
    """Slice a job's plain-text log from offset for incremental polling.

    totalLength is the full log length; a client passes it back as the next
    offset. hasMore is true when this chunk carries any new text.
    """
    text = data if isinstance(data, str) else ""
    content = text[offset:]
    return {"content": content, "totalLength": len(text), "hasMore": len(content) > 0}


# ---------------------------------------------------------------------------
# Commit status
# ---------------------------------------------------------------------------


def fetch_optional(get: Callable[..., Any], path: str, default: Any, params: Optional[dict] = None) -> Any:
    """Call get(path, params), falling back to default on any failure except a rejected credential."""
    try:
        return get(path, params)
    except UpstreamFailureError as e:
        if e.failure.kind is FailureKind.INVALID_CREDENTIAL:
            raise
        logger.info("Optional upstream read %s failed: %s", path, e.failure.kind.value)
        return default


def build_commit_status(status: Optional[dict]) -> dict:
    return {"status": status or {"state": "pending", "statuses": []}, "check_runs": []}


def add_check_runs(get: Callable[..., Any], page: dict, checks_path: str) -> dict:
    """Complete a commit status payload with the ref's check runs."""
    checks = fetch_optional(get, checks_path, {"check_runs": []}) or {}
    return {**page, "check_runs": checks.get("check_runs") or []}
