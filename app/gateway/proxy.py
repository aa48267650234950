# app/gateway/proxy.py
"""
Reverse proxy: forwards paid requests to the upstream service.

Only an allow-list of request headers is passed on, plus X-Forwarded-For
with the caller's address. The upstream status, body and content type are
relayed verbatim. Transport failures become a 502; nothing is retried here.
"""
import logging
from typing import Mapping

import requests
from starlette.responses import JSONResponse, Response

from app.core.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)

FORWARDED_HEADERS = (
    "content-type",
    "accept",
    "authorization",
    "user-agent",
    "accept-encoding",
    "accept-language",
)

BODYLESS_METHODS = ("GET", "HEAD")


def build_upstream_url(upstream: str, path_with_query: str) -> str:
    """Join the upstream base URL and the original request path + query."""
    if not path_with_query.startswith("/"):
        path_with_query = "/" + path_with_query
    return upstream.rstrip("/") + path_with_query


def select_headers(headers: Mapping[str, str], client_ip: str) -> dict:
    """Copy allow-listed headers (case-insensitively) and add X-Forwarded-For."""
    lowered = {key.lower(): value for key, value in headers.items()}
    selected = {key: lowered[key] for key in FORWARDED_HEADERS if key in lowered}
    selected["x-forwarded-for"] = client_ip
    return selected


def bad_gateway_response() -> JSONResponse:
    error = UpstreamUnavailableError("Upstream unavailable")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def forward(
    method: str,
    path_with_query: str,
    headers: Mapping[str, str],
    body: bytes,
    client_ip: str,
    upstream: str,
    timeout: float = 30
) -> Response:
    """
    Forward a request to the upstream service.

    Args:
        method: HTTP method of the inbound request
        path_with_query: Inbound path including the query string
        headers: Inbound request headers
        body: Raw inbound body (ignored for GET/HEAD)
        client_ip: Caller address for X-Forwarded-For
        upstream: Upstream base URL
        timeout: Seconds to wait for the upstream

    Returns:
        The relayed upstream response, or a 502 on transport failure
    """
    upstream_url = build_upstream_url(upstream, path_with_query)
    method = method.upper()
    data = None if method in BODYLESS_METHODS else body

    try:
        upstream_response = requests.request(
            method,
            upstream_url,
            headers=select_headers(headers, client_ip),
            data=data,
            timeout=timeout,
            allow_redirects=False,
        )
    except requests.RequestException as e:
        logger.error(f"proxy: upstream error for {method} {upstream_url}: {e}")
        return bad_gateway_response()

    logger.info(f"proxy: {method} {upstream_url} -> {upstream_response.status_code}")

    relayed_headers = {}
    content_type = upstream_response.headers.get("content-type")
    if content_type:
        relayed_headers["content-type"] = content_type

    return Response(
        content=upstream_response.content,
        status_code=upstream_response.status_code,
        headers=relayed_headers,
    )
