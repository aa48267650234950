# app/gateway/middleware.py
"""
FastAPI middleware that puts the payment gate in front of every route.

Gateway endpoints (health, invoice polling, prepaid) are exempt and pass
through to their FastAPI handlers. Every other request is handed to the
GatewayController, which either proxies it upstream or answers with 402;
such requests never reach the FastAPI router.

The controller is blocking (SQLite + requests), so it runs in the worker
thread pool and a slow ledger lookup never stalls the event loop.
"""
import logging
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from app.core.errors import GatewayError
from app.gateway.audit import generate_request_id
from app.gateway.controller import GatewayController, GatewayRequest, get_controller

logger = logging.getLogger(__name__)

DOCS_PREFIX = "/_gateway"

# Paths served by the gateway itself, never payment-gated
EXEMPT_PATHS = ("/health",)
EXEMPT_PREFIXES = ("/invoices/", "/prepaid/", f"{DOCS_PREFIX}/")


def is_exempt_path(path: str) -> bool:
    """Check if the request path is one of the gateway's own endpoints."""
    if path in EXEMPT_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in EXEMPT_PREFIXES)


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    # Check for forwarded headers first
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    # Fall back to direct connection
    if request.client:
        return request.client.host

    return "unknown"


async def build_gateway_request(request: Request) -> GatewayRequest:
    """Snapshot what the controller needs, including the full body."""
    return GatewayRequest(
        method=request.method,
        path=request.url.path,
        query=request.url.query,
        headers=dict(request.headers),
        body=await request.body(),
        client_ip=get_client_ip(request),
        request_id=generate_request_id(),
    )


class PaymentGatewayMiddleware(BaseHTTPMiddleware):
    """
    402 payment gate for all non-exempt paths.
    """

    def __init__(self, app, controller: Optional[GatewayController] = None):
        super().__init__(app)
        self._controller = controller

    @property
    def controller(self) -> GatewayController:
        """Injected controller, else the global one."""
        if self._controller is not None:
            return self._controller
        return get_controller()

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        if is_exempt_path(request.url.path):
            return await call_next(request)

        gateway_request = await build_gateway_request(request)
        logger.info(
            f"gateway: {gateway_request.method} {gateway_request.path} "
            f"from {gateway_request.client_ip} [{gateway_request.request_id}]"
        )
        try:
            return await run_in_threadpool(self.controller.handle, gateway_request)
        except GatewayError as e:
            # Raised below the router, so FastAPI exception handlers do not see it
            logger.warning(f"gateway: {e.code} for {gateway_request.path} [{gateway_request.request_id}]")
            return JSONResponse(status_code=e.status_code, content=e.to_dict())
