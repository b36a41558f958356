"""
api/dependencies.py -- Depends() helpers owned by the API layer.

The Gateway ties the cache to the upstream client, so it is looked up here
rather than in auth/, which stays independent of cache/.
"""

from __future__ import annotations

from fastapi import Request

from core.gateway import Gateway


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway
