# tests/test_proxy.py
"""
Unit tests for the upstream reverse proxy.
"""
import json
import requests
from unittest.mock import MagicMock, patch

from starlette.responses import JSONResponse

from app.gateway.proxy import (
    bad_gateway_response,
    build_upstream_url,
    forward,
    select_headers,
)


def upstream_response(status_code=200, content=b'{"ok": true}', content_type="application/json"):
    response = MagicMock()
    response.status_code = status_code
    response.content = content
    response.headers = {"content-type": content_type} if content_type else {}
    return response


class TestBuildUpstreamUrl:
    """Test upstream URL construction."""

    def test_joins_path_and_query(self):
        """Path and query are appended to the base URL."""
        assert build_upstream_url("http://up:3000", "/api/x?a=1") == "http://up:3000/api/x?a=1"

    def test_trailing_slash_on_base(self):
        """A trailing slash on the base is not doubled."""
        assert build_upstream_url("http://up:3000/", "/api/x") == "http://up:3000/api/x"

    def test_missing_leading_slash(self):
        """A path without a leading slash still joins correctly."""
        assert build_upstream_url("http://up", "api") == "http://up/api"


class TestSelectHeaders:
    """Test header allow-listing."""

    def test_allow_listed_headers_kept(self):
        """Only allow-listed headers are forwarded, matched case-insensitively."""
        headers = {
            "Content-Type": "application/json",
            "Accept": "*/*",
            "Authorization": "Bearer t",
            "User-Agent": "agent/1.0",
            "Cookie": "secret=1",
            "X-Payment-Proof": "inv-1",
            "X-Client-Id": "c1",
            "Host": "gateway.local",
        }
        selected = select_headers(headers, "203.0.113.7")

        assert selected == {
            "content-type": "application/json",
            "accept": "*/*",
            "authorization": "Bearer t",
            "user-agent": "agent/1.0",
            "x-forwarded-for": "203.0.113.7",
        }

    def test_forwarded_for_always_set(self):
        """X-Forwarded-For carries the client address."""
        assert select_headers({}, "10.0.0.1") == {"x-forwarded-for": "10.0.0.1"}


class TestForward:
    """Test request forwarding."""

    @patch("app.gateway.proxy.requests.request")
    def test_get_forwarded_without_body(self, mock_request):
        """GET is forwarded with path, query and no body."""
        mock_request.return_value = upstream_response()

        response = forward("GET", "/api/data?x=1", {"Accept": "application/json"}, b"ignored", "1.2.3.4", "http://up:3000")

        args, kwargs = mock_request.call_args
        assert args == ("GET", "http://up:3000/api/data?x=1")
        assert kwargs["data"] is None
        assert kwargs["headers"]["x-forwarded-for"] == "1.2.3.4"
        assert kwargs["allow_redirects"] is False
        assert response.status_code == 200
        assert json.loads(response.body) == {"ok": True}

    @patch("app.gateway.proxy.requests.request")
    def test_post_body_forwarded(self, mock_request):
        """POST bodies are passed through unchanged."""
        mock_request.return_value = upstream_response(status_code=201)
        body = b'{"name": "thing"}'

        response = forward("post", "/api/items", {"Content-Type": "application/json"}, body, "1.2.3.4", "http://up")

        args, kwargs = mock_request.call_args
        assert args[0] == "POST"
        assert kwargs["data"] == body
        assert response.status_code == 201

    @patch("app.gateway.proxy.requests.request")
    def test_upstream_status_relayed(self, mock_request):
        """Upstream errors are relayed, not replaced."""
        mock_request.return_value = upstream_response(status_code=404, content=b"missing", content_type="text/plain")

        response = forward("GET", "/api/x", {}, b"", "1.2.3.4", "http://up")

        assert response.status_code == 404
        assert response.body == b"missing"
        assert response.headers["content-type"].startswith("text/plain")
        assert not isinstance(response, JSONResponse)

    @patch("app.gateway.proxy.requests.request")
    def test_timeout_passed(self, mock_request):
        """The configured timeout reaches the HTTP client."""
        mock_request.return_value = upstream_response()

        forward("GET", "/api/x", {}, b"", "1.2.3.4", "http://up", timeout=7)

        assert mock_request.call_args.kwargs["timeout"] == 7

    @patch("app.gateway.proxy.requests.request")
    def test_connection_error_is_502(self, mock_request):
        """Transport failures become 502 BAD_GATEWAY."""
        mock_request.side_effect = requests.ConnectionError("refused")

        response = forward("GET", "/api/x", {}, b"", "1.2.3.4", "http://up")

        assert isinstance(response, JSONResponse)
        assert response.status_code == 502
        assert json.loads(response.body) == {"error": "Upstream unavailable", "code": "BAD_GATEWAY"}

    @patch("app.gateway.proxy.requests.request")
    def test_timeout_is_502(self, mock_request):
        """Upstream timeouts become 502."""
        mock_request.side_effect = requests.Timeout("slow")

        assert forward("GET", "/api/x", {}, b"", "1.2.3.4", "http://up").status_code == 502


class TestBadGatewayResponse:
    """Test the 502 body."""

    def test_body(self):
        """The body names the error and its code."""
        response = bad_gateway_response()
        assert response.status_code == 502
        assert json.loads(response.body)["code"] == "BAD_GATEWAY"
