from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import structlog
from ordercore.version import VERSION
from ordercore.api import orders, payments
from ordercore.core.config import settings
from ordercore.core.errors import DomainError
from ordercore.kafka import consumer as payment_consumer
from ordercore.kafka import producer
from ordercore.payments.gateway import build_gateway
from ordercore.services.notifications import build_notifier
from ordercore.utils.logging import configure_logging
from prometheus_fastapi_instrumentator import Instrumentator

logger = structlog.get_logger(__name__)

configure_logging()

# Create instrumentator first
instrumentator = Instrumentator()

app = FastAPI(title="Order Core Service", version=VERSION)

# Instrument the app BEFORE adding routes or middleware
instrumentator.instrument(app).expose(
    app,
    include_in_schema=False,
    endpoint="/order/metrics",
    should_gzip=True,
)

# Provider clients and the notifier are built once per process
app.state.notifier = build_notifier()
app.state.gateway = build_gateway(app.state.notifier)

@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", path=request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})

# Health endpoints
@app.get("/health")
def health():
    return {"status": "ok"}

@app.get("/order/health")
def order_health():
    return {"status": "ok"}

@app.get("/v1/_info")
def info():
    return {"service": "order-core", "version": VERSION}

@app.on_event("startup")
async def startup_event():
    for route in app.routes:
        if hasattr(route, "methods") and hasattr(route, "path"):
            logger.debug("Route registered", methods=sorted(route.methods), path=route.path)

    if settings.PAYMENT_CONSUMER_ENABLED:
        payment_consumer.start(app.state.gateway)

@app.on_event("shutdown")
async def shutdown_event():
    payment_consumer.stop()
    producer.close()

# Include routers
app.include_router(orders.router, prefix="/order", tags=["orders"])
app.include_router(payments.router, prefix="/payment", tags=["payments"])
