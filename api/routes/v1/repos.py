"""
api/routes/v1/repos.py -- Repository-scoped resources for the hubgate REST API.

Routes (in registration order to avoid FastAPI path capture conflicts):
  GET     /repos                                           -- repository list
  OPTIONS /repos/{owner}/{repo}/actions                    -- CORS preflight
  GET     /repos/{owner}/{repo}/actions                    -- workflow runs (one page)
  GET     /repos/{owner}/{repo}/actions/{run_id}           -- one workflow run
  GET     /repos/{owner}/{repo}/actions/{run_id}/jobs      -- jobs of one run
  GET     /repos/{owner}/{repo}/actions/jobs/{job_id}/logs -- job log from an offset
  POST    /repos/{owner}/{repo}/actions/{run_id}/rerun     -- re-run a workflow run
  GET     /repos/{owner}/{repo}/workflows                  -- manually dispatchable workflows
  POST    /repos/{owner}/{repo}/workflows/{workflow_id}/dispatch -- trigger a workflow
  GET     /repos/{owner}/{repo}/branches                   -- branches
  GET     /repos/{owner}/{repo}/pulls                      -- pull requests
  POST    /repos/{owner}/{repo}/pulls                      -- open a pull request
  PUT     /repos/{owner}/{repo}/pulls/{number}/merge       -- merge a pull request
  GET     /repos/{owner}/{repo}/contents                   -- file or directory listing
  GET     /repos/{owner}/{repo}/status?ref=                -- commit status and check runs

Reads go through Gateway.serve() and answer conditional requests. Writes go
through Gateway.mutate(), are never cached, and drop every cached variant of
the read views they change (by key prefix, across all users).

Input rules:
  [R1] owner, repo, org and workflow_id must match NAME_PATTERN and must not be
       "." or "..". Violations are a 400 before any cache or upstream work.
  [R2] A contents path must not contain a ".." segment. A git ref placed in an
       upstream path is fully percent-encoded.
  [R3] Every cache key carries the acting login from the session.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import partial
from typing import Any, Literal, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import JSONResponse, Response

from api.dependencies import get_gateway
from api.models import DispatchRequest, MergeRequest, PullCreate, SuccessResponse
from api.responses import render
from auth.dependencies import request_validators, require_session
from cache.keys import fingerprint, resource_prefix
from cache.policy import (
    BRANCHES,
    COMMIT_STATUS,
    CONTENTS,
    JOB_LOGS,
    NO_STORE,
    PULL_REQUESTS,
    REPOSITORIES,
    RUN_JOBS,
    WORKFLOW_RUN,
    WORKFLOW_RUNS,
    WORKFLOWS,
)
from core.actions import (
    add_check_runs,
    build_commit_status,
    build_jobs_page,
    build_log_chunk,
    build_run,
    build_runs_page,
    sanitize_run_query,
)
from core.errors import ValidationFailure
from core.gateway import ResourceRequest
from core.models import RequestValidators, Session
from core.workflows import list_dispatchable

router = APIRouter()

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,100}$")
_PER_PAGE = 100

PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, If-None-Match, If-Modified-Since",
}


def check_name(kind: str, value: str) -> str:
    """[R1] Reject names that could escape the upstream path segment."""
    if not NAME_PATTERN.match(value) or value in (".", ".."):
        raise ValidationFailure(f"Invalid {kind}.")
    return value


def check_contents_path(path: str) -> str:
    """[R2] Normalise slashes and reject parent-directory segments."""
    cleaned = path.strip("/")
    if any(segment == ".." for segment in cleaned.split("/")):
        raise ValidationFailure("Invalid path.")
    return cleaned


@dataclass(frozen=True)
class RepoRef:
    owner: str
    repo: str

    @property
    def api_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    def key_params(self, **extra: Any) -> dict[str, Any]:
        return {"owner": self.owner, "repo": self.repo, **extra}


def repo_ref(owner: str, repo: str) -> RepoRef:
    return RepoRef(owner=check_name("owner", owner), repo=check_name("repo", repo))


def _serve(request: Request, session: Session, resource: ResourceRequest, validators: RequestValidators) -> Response:
    return render(get_gateway(request).serve(session.credential, resource, validators))


def _no_store(content: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content, headers={"Cache-Control": NO_STORE})


def _wrap_branches(data: Any) -> dict:
    return {"branches": data or []}


# ---------------------------------------------------------------------------
# GET /repos -- repository list
# ---------------------------------------------------------------------------


@router.get("/repos")
def list_repos(
    request: Request,
    org: Optional[str] = Query(default=None),
    personal: bool = Query(default=False),
    session: Session = Depends(require_session),
    validators: RequestValidators = Depends(request_validators),
) -> Response:
    """List repositories: the user's own (personal=true), an organisation's, or all visible."""
    if org:
        check_name("org", org)
        path = f"/orgs/{org}/repos"
        params = {"sort": "updated", "per_page": _PER_PAGE}
    elif personal:
        path = "/user/repos"
        params = {"affiliation": "owner", "sort": "updated", "per_page": _PER_PAGE}
    else:
        path = "/user/repos"
        params = {"sort": "updated", "per_page": _PER_PAGE}

    resource = ResourceRequest(
        resource=REPOSITORIES,
        key=fingerprint(
            REPOSITORIES,
            {"org": org} if org else None,
            {**params, "personal": "true" if personal and not org else None},
            identity=session.login,
        ),
        path=path,
        params=params,
    )
    return _serve(request, session, resource, validators)


# ---------------------------------------------------------------------------
# Workflow runs and jobs
# ---------------------------------------------------------------------------


@router.options("/repos/{owner}/{repo}/actions")
def actions_preflight(ref: RepoRef = Depends(repo_ref)) -> Response:
    return Response(status_code=200, headers=PREFLIGHT_HEADERS)


@router.get("/repos/{owner}/{repo}/actions")
def list_runs(
    request: Request,
    ref: RepoRef = Depends(repo_ref),
    session: Session = Depends(require_session),
    validators: RequestValidators = Depends(request_validators),
) -> Response:
    """One page of workflow runs.

    page, per_page, status, event, branch and actor are forwarded upstream;
    workflow_id and search filter the returned page locally. Every parameter
    that shapes the body is part of the cache key.
    """
    query = sanitize_run_query(dict(request.query_params))
    resource = ResourceRequest(
        resource=WORKFLOW_RUNS,
        key=fingerprint(WORKFLOW_RUNS, ref.key_params(), query.key_params(), identity=session.login),
        path=f"{ref.api_path}/actions/runs",
        params=query.upstream_params(),
        transform=partial(build_runs_page, query=query),
    )
    return _serve(request, session, resource, validators)


@router.get("/repos/{owner}/{repo}/actions/{run_id}")
def get_run(
    request: Request,
    ref: RepoRef = Depends(repo_ref),
    run_id: int = Path(ge=1),
    session: Session = Depends(require_session),
    validators: RequestValidators = Depends(request_validators),
) -> Response:
    resource = ResourceRequest(
        resource=WORKFLOW_RUN,
        key=fingerprint(WORKFLOW_RUN, ref.key_params(run_id=run_id), identity=session.login),
        path=f"{ref.api_path}/actions/runs/{run_id}",
        transform=build_run,
    )
    return _serve(request, session, resource, validators)


@router.get("/repos/{owner}/{repo}/actions/{run_id}/jobs")
def list_jobs(
    request: Request,
    ref: RepoRef = Depends(repo_ref),
    run_id: int = Path(ge=1),
    session: Session = Depends(require_session),
    validators: RequestValidators = Depends(request_validators),
) -> Response:
    resource = ResourceRequest(
        resource=RUN_JOBS,
        key=fingerprint(RUN_JOBS, ref.key_params(run_id=run_id), {"per_page": _PER_PAGE}, identity=session.login),
        path=f"{ref.api_path}/actions/runs/{run_id}/jobs",
        params={"per_page": _PER_PAGE},
        transform=build_jobs_page,
    )
    return _serve(request, session, resource, validators)


@router.get("/repos/{owner}/{repo}/actions/jobs/{job_id}/logs")
def job_logs(
    request: Request,
    ref: RepoRef = Depends(repo_ref),
    job_id: int = Path(ge=1),
    offset: int = Query(default=0, ge=0),
    session: Session = Depends(require_session),
    validators: RequestValidators = Depends(request_validators),
) -> Response:
    """Job log text from offset (characters), for incremental polling.

    The offset is part of the key: a poll that finds no new text hits the
    same entry as the previous one.
    """
    resource = ResourceRequest(
        resource=JOB_LOGS,
        key=fingerprint(JOB_LOGS, ref.key_params(job_id=job_id), {"offset": offset}, identity=session.login),
        path=f"{ref.api_path}/actions/jobs/{job_id}/logs",
        transform=partial(build_log_chunk, offset=offset),
    )
    return _serve(request, session, resource, validators)


@router.post("/repos/{owner}/{repo}/actions/{run_id}/rerun", response_model=SuccessResponse)
def rerun(
    request: Request,
    ref: RepoRef = Depends(repo_ref),
    run_id: int = Path(ge=1),
    session: Session = Depends(require_session),
) -> JSONResponse:
    get_gateway(request).mutate(
        session.credential,
        "POST",
        f"{ref.api_path}/actions/runs/{run_id}/rerun",
        invalidate=(
            resource_prefix(WORKFLOW_RUNS, **ref.key_params()),
            resource_prefix(WORKFLOW_RUN, **ref.key_params(run_id=run_id)),
            resource_prefix(RUN_JOBS, **ref.key_params(run_id=run_id)),
        ),
    )
    return _no_store(SuccessResponse().model_dump(exclude_none=True))


@router.get("/repos/{owner}/{repo}/workflows")
def list_workflows(
    request: Request,
    ref: RepoRef = Depends(repo_ref),
    git_ref: Optional[str] = Query(default=None, alias="ref", max_length=255),
    session: Session = Depends(require_session),
    validators: RequestValidators = Depends(request_validators),
) -> Response:
    """Workflows with a workflow_dispatch trigger, with their declared inputs.

    Definitions are read at ref (default branch when absent).
    """
    resource = ResourceRequest(
        resource=WORKFLOWS,
        key=fingerprint(WORKFLOWS, ref.key_params(), {"ref": git_ref}, identity=session.login),
        path=f"{ref.api_path}/actions/workflows",
        params={"per_page": _PER_PAGE},
        expand=partial(list_dispatchable, api_path=ref.api_path, ref=git_ref),
    )
    return _serve(request, session, resource, validators)


@router.post("/repos/{owner}/{repo}/workflows/{workflow_id}/dispatch", response_model=SuccessResponse)
def dispatch(
    request: Request,
    body: DispatchRequest,
    ref: RepoRef = Depends(repo_ref),
    workflow_id: str = Path(),
    session: Session = Depends(require_session),
) -> JSONResponse:
    """Trigger a workflow_dispatch event. workflow_id is a numeric id or a file name."""
    check_name("workflow_id", workflow_id)
    get_gateway(request).mutate(
        session.credential,
        "POST",
        f"{ref.api_path}/actions/workflows/{workflow_id}/dispatches",
        json={"ref": body.ref, "inputs": body.inputs},
        invalidate=(resource_prefix(WORKFLOW_RUNS, **ref.key_params()),),
    )
    return _no_store(SuccessResponse(message="Workflow dispatched successfully").model_dump())


# ---------------------------------------------------------------------------
# Branches and pull requests
# ---------------------------------------------------------------------------


@router.get("/repos/{owner}/{repo}/branches")
def list_branches(
    request: Request,
    ref: RepoRef = Depends(repo_ref),
    session: Session = Depends(require_session),
    validators: RequestValidators = Depends(request_validators),
) -> Response:
    resource = ResourceRequest(
        resource=BRANCHES,
        key=fingerprint(BRANCHES, ref.key_params(), {"per_page": _PER_PAGE}, identity=session.login),
        path=f"{ref.api_path}/branches",
        params={"per_page": _PER_PAGE},
        transform=_wrap_branches,
    )
    return _serve(request, session, resource, validators)


@router.get("/repos/{owner}/{repo}/pulls")
def list_pulls(
    request: Request,
    ref: RepoRef = Depends(repo_ref),
    state: Literal["open", "closed", "all"] = Query(default="open"),
    session: Session = Depends(require_session),
    validators: RequestValidators = Depends(request_validators),
) -> Response:
    resource = ResourceRequest(
        resource=PULL_REQUESTS,
        key=fingerprint(PULL_REQUESTS, ref.key_params(), {"state": state}, identity=session.login),
        path=f"{ref.api_path}/pulls",
        params={"state": state},
    )
    return _serve(request, session, resource, validators)


@router.post("/repos/{owner}/{repo}/pulls", status_code=201)
def create_pull(
    request: Request,
    body: PullCreate,
    ref: RepoRef = Depends(repo_ref),
    session: Session = Depends(require_session),
) -> JSONResponse:
    created = get_gateway(request).mutate(
        session.credential,
        "POST",
        f"{ref.api_path}/pulls",
        json=body.model_dump(),
        invalidate=(resource_prefix(PULL_REQUESTS, **ref.key_params()),),
    )
    return _no_store(created, status_code=201)


@router.put("/repos/{owner}/{repo}/pulls/{number}/merge")
def merge_pull(
    request: Request,
    body: MergeRequest,
    ref: RepoRef = Depends(repo_ref),
    number: int = Path(ge=1),
    session: Session = Depends(require_session),
) -> JSONResponse:
    merged = get_gateway(request).mutate(
        session.credential,
        "PUT",
        f"{ref.api_path}/pulls/{number}/merge",
        json=body.model_dump(exclude_none=True),
        invalidate=(resource_prefix(PULL_REQUESTS, **ref.key_params()),),
    )
    return _no_store(merged)


# ---------------------------------------------------------------------------
# GET /repos/{owner}/{repo}/contents -- file or directory
# ---------------------------------------------------------------------------


@router.get("/repos/{owner}/{repo}/contents")
def get_contents(
    request: Request,
    ref: RepoRef = Depends(repo_ref),
    path: str = Query(default="", max_length=1024),
    git_ref: Optional[str] = Query(default=None, alias="ref", max_length=255),
    session: Session = Depends(require_session),
    validators: RequestValidators = Depends(request_validators),
) -> Response:
    """Directory listing or file object at path; an absent path is a 404."""
    cleaned = check_contents_path(path)
    resource = ResourceRequest(
        resource=CONTENTS,
        key=fingerprint(CONTENTS, ref.key_params(), {"path": cleaned, "ref": git_ref}, identity=session.login),
        path=f"{ref.api_path}/contents/{quote(cleaned, safe='/')}",
        params={"ref": git_ref},
    )
    return _serve(request, session, resource, validators)


# ---------------------------------------------------------------------------
# GET /repos/{owner}/{repo}/status -- commit status and check runs
# ---------------------------------------------------------------------------


@router.get("/repos/{owner}/{repo}/status")
def commit_status(
    request: Request,
    ref: RepoRef = Depends(repo_ref),
    git_ref: str = Query(alias="ref", min_length=1, max_length=255),
    session: Session = Depends(require_session),
    validators: RequestValidators = Depends(request_validators),
) -> Response:
    """Combined status of a commit, branch or tag plus its check runs.

    An unreadable check-run list degrades to an empty one.
    """
    commit_path = f"{ref.api_path}/commits/{quote(git_ref, safe='')}"
    resource = ResourceRequest(
        resource=COMMIT_STATUS,
        key=fingerprint(COMMIT_STATUS, ref.key_params(), {"ref": git_ref}, identity=session.login),
        path=f"{commit_path}/status",
        transform=build_commit_status,
        expand=partial(add_check_runs, checks_path=f"{commit_path}/check-runs"),
    )
    return _serve(request, session, resource, validators)
