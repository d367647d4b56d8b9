from fastapi import FastAPI
import structlog
from bookstore.version import VERSION
from bookstore.api import cart, downloads, orders, payments, payouts
from bookstore.core.errors import register_exception_handlers
from bookstore.core.logging import configure_logging
from prometheus_fastapi_instrumentator import Instrumentator

configure_logging()
logger = structlog.get_logger(__name__)

instrumentator = Instrumentator()

app = FastAPI(title="Bookstore Order Service", version=VERSION)

# Instrument the app BEFORE adding routes or middleware
instrumentator.instrument(app).expose(
    app,
    include_in_schema=False,
    endpoint="/metrics",
    should_gzip=True,
)

register_exception_handlers(app)

# Health endpoints
@app.get("/health")
def health():
    return {"status": "ok"}

@app.get("/v1/_info")
def info():
    return {"service": "bookstore", "version": VERSION}

@app.on_event("startup")
async def startup_event():
    for route in app.routes:
        if hasattr(route, "methods") and hasattr(route, "path"):
            logger.debug("route_registered", methods=sorted(route.methods), path=route.path)
    logger.info("service_started", version=VERSION)

# Include routers
app.include_router(orders.router, tags=["orders"])
app.include_router(payments.router, tags=["payments"])
app.include_router(cart.router, tags=["cart"])
app.include_router(downloads.router, tags=["downloads"])
app.include_router(payouts.router, tags=["payouts"])
