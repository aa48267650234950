# app/main.py
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from app.core.config import settings
from app.core.errors import register_exception_handlers
from app.core.version import VERSION
from app.api.endpoints import invoices, prepaid
from app.gateway.controller import get_controller
from app.gateway.middleware import DOCS_PREFIX, PaymentGatewayMiddleware
from app.gateway.sweeper import ExpirySweeper

# Configure basic logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    controller = get_controller()
    sweeper = ExpirySweeper(controller.invoices, interval_seconds=settings.GATEWAY_SWEEP_INTERVAL)
    sweeper.start()

    logger.info(f"{settings.PROJECT_NAME} {VERSION} starting")
    logger.info(f"   Upstream: {settings.upstream_base}")
    logger.info(f"   Payment address: {settings.GATEWAY_PAYMENT_ADDRESS or '(not configured)'}")
    logger.info(f"   Default price: {settings.GATEWAY_DEFAULT_PRICE} {settings.GATEWAY_CURRENCY}")
    logger.info(f"   Routes: {len(settings.route_prices)} priced pattern(s)")
    logger.info(f"   Prepaid: {'enabled' if settings.GATEWAY_PREPAID else 'disabled'}")
    if not settings.GATEWAY_PAYMENT_ADDRESS:
        logger.warning("GATEWAY_PAYMENT_ADDRESS not configured - invoices cannot be paid")

    yield

    await sweeper.stop()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=VERSION,
    openapi_url=f"{DOCS_PREFIX}/openapi.json",
    docs_url=f"{DOCS_PREFIX}/docs",
    redoc_url=None,
    lifespan=lifespan,
)

register_exception_handlers(app)

# Every path not served below is payment-gated and proxied upstream
app.add_middleware(PaymentGatewayMiddleware)

app.include_router(invoices.router, prefix="/invoices", tags=["invoices"])
app.include_router(prepaid.router, prefix="/prepaid", tags=["prepaid"])

@app.get("/health", summary="Health Check", tags=["default"])
def health():
    """ Liveness check, always free. """
    return {"status": "ok", "version": VERSION}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
