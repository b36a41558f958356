"""
API request and response models for the hubgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two.

Cached resource bodies (repository lists, workflow runs, ...) are passed
through as JSON and have no model here: their shape is GitHub's, or the one
built by core/actions.py.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.models import Identity

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/login.

    The token is deliberately not whitespace-stripped: a token is used exactly
    as submitted or rejected.
    """

    token: str = Field(min_length=1, max_length=255, description="GitHub personal access token.")


class DispatchRequest(BaseModel):
    """Request body for POST /api/repos/{owner}/{repo}/workflows/{workflow_id}/dispatch."""

    ref: str = Field(default="main", min_length=1, max_length=255)
    inputs: dict[str, Any] = Field(default_factory=dict)


class MergeRequest(BaseModel):
    """Request body for PUT /api/repos/{owner}/{repo}/pulls/{number}/merge."""

    commit_title: Optional[str] = Field(default=None, max_length=1024)
    commit_message: Optional[str] = None
    merge_method: Literal["merge", "squash", "rebase"] = "merge"


class PullCreate(BaseModel):
    """Request body for POST /api/repos/{owner}/{repo}/pulls."""

    title: str = Field(min_length=1, max_length=1024)
    head: str = Field(min_length=1, max_length=255)
    base: str = Field(min_length=1, max_length=255)
    body: str = ""


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SessionUser(BaseModel):
    model_config = ConfigDict(frozen=True)

    login: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None

    @classmethod
    def from_identity(cls, identity: Identity) -> "SessionUser":
        return cls(login=identity.login, name=identity.name, avatar_url=identity.avatar_url)


class SessionStatus(BaseModel):
    """Response for GET /api/session. user is omitted when unauthenticated."""

    model_config = ConfigDict(frozen=True)

    authenticated: bool
    user: Optional[SessionUser] = None


class SuccessResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: Optional[str] = None


class Organization(BaseModel):
    """One entry of GET /api/orgs. The personal pseudo-organisation has isPersonal=True."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    login: str
    avatar_url: Optional[str] = None
    name: str
    isPersonal: bool


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    cache_entries: int
