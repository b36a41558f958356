"""
api/routes/v1/orgs.py -- Organisation list for the repository picker.

Routes:
  GET /api/orgs -- the user's personal pseudo-organisation, then every
                   organisation they belong to

The personal entry is built from a fresh who-am-I call; it doubles as a
credential check, so a revoked token is noticed here even when the
organisation list itself is served from cache. The organisation list goes
through the Gateway under the organizations resource class.
"""

from __future__ import annotations

from functools import partial
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from api.dependencies import get_gateway
from api.models import Organization
from api.responses import render
from auth.dependencies import get_gate, request_validators, require_session
from cache.keys import fingerprint
from cache.policy import ORGANIZATIONS
from core.gateway import ResourceRequest
from core.models import Identity, RequestValidators, Session

router = APIRouter()

_PER_PAGE = 100


def build_org_list(identity: Identity, data: Any) -> list[dict]:
    """Personal pseudo-organisation first, then the upstream organisations."""
    personal = Organization(
        id=identity.id,
        login=identity.login,
        avatar_url=identity.avatar_url,
        name=identity.name or identity.login,
        isPersonal=True,
    )
    orgs = [
        Organization(
            id=org.get("id"),
            login=org["login"],
            avatar_url=org.get("avatar_url"),
            name=org.get("description") or org["login"],
            isPersonal=False,
        )
        for org in (data or [])
        if org.get("login")
    ]
    return [o.model_dump() for o in [personal, *orgs]]


@router.get("/orgs", response_model=list[Organization])
def list_orgs(
    request: Request,
    session: Session = Depends(require_session),
    validators: RequestValidators = Depends(request_validators),
) -> Response:
    identity = get_gate(request).authenticate(session.credential)
    resource = ResourceRequest(
        resource=ORGANIZATIONS,
        key=fingerprint(ORGANIZATIONS, query={"per_page": _PER_PAGE}, identity=identity.login),
        path="/user/orgs",
        params={"per_page": _PER_PAGE},
        transform=partial(build_org_list, identity),
    )
    return render(get_gateway(request).serve(session.credential, resource, validators))
