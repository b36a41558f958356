"""
api/responses.py -- Rendering of Gateway results as HTTP responses.

A 304 carries no body and no Content-Type; everything else is JSON. The
validator headers set by the Gateway (Cache-Control, ETag, Last-Modified,
X-Cache) are copied through unchanged.
"""

from fastapi.responses import JSONResponse, Response

from core.gateway import GatewayResponse


def render(result: GatewayResponse) -> Response:
    if result.status_code == 304:
        return Response(status_code=304, headers=result.headers)
    return JSONResponse(status_code=result.status_code, content=result.body, headers=result.headers)
