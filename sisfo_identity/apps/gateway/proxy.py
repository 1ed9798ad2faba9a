from __future__ import annotations

import logging

import httpx
from fastapi import Request
from starlette.responses import Response

from sisfo_identity.apps.api.response import REQUEST_ID_HEADER, get_request_id


logger = logging.getLogger(__name__)

# Connection-scoped headers never cross a proxy hop.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
# Recomputed by httpx / starlette for the new message.
_REQUEST_SKIP = HOP_BY_HOP_HEADERS | {"host", "content-length"}
_RESPONSE_SKIP = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}


def build_target_url(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + "/" + path.lstrip("/")


def forward_headers(request: Request) -> dict[str, str]:
    headers = {
        key: value for key, value in request.headers.items() if key.lower() not in _REQUEST_SKIP
    }
    # Drop headers named in Connection as well.
    for token in request.headers.get("connection", "").split(","):
        headers.pop(token.strip().lower(), None)
    # Append the direct peer to any chain the client already sent.
    peer = request.client.host if request.client else ""
    chain = [part for part in (request.headers.get("x-forwarded-for"), peer) if part]
    headers["x-forwarded-for"] = ", ".join(chain)
    headers[REQUEST_ID_HEADER.lower()] = get_request_id(request)
    return headers


def response_headers(upstream: httpx.Response) -> dict[str, str]:
    return {
        key: value for key, value in upstream.headers.items() if key.lower() not in _RESPONSE_SKIP
    }


class UpstreamProxy:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def forward(self, request: Request, base_url: str) -> httpx.Response:
        # Transport failures propagate as httpx.HTTPError for the caller to map.
        target = build_target_url(base_url, request.url.path)
        body = await request.body()
        logger.debug("proxy_forward method=%s path=%s target=%s", request.method, request.url.path, target)
        return await self._client.request(
            request.method,
            target,
            params=list(request.query_params.multi_items()),
            headers=forward_headers(request),
            content=body or None,
        )

    @staticmethod
    def to_response(upstream: httpx.Response) -> Response:
        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            headers=response_headers(upstream),
        )
