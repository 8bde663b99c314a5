import time
import uuid

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from zaryo.core.config import get_settings
from zaryo.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from zaryo.core.logging import bind_request_id, configure_logging, get_logger
from zaryo.db.init import init_db
from zaryo.routers import admin, content, overview, payments, products, purchases, redemptions, subscriptions, wallet

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

app = FastAPI(
    title="Zaryo Ledger API",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    bind_request_id(request_id)
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    log.info(
        "request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )
    response.headers["X-Request-ID"] = request_id
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(wallet.router, prefix="/v1/wallet", tags=["wallet"])
app.include_router(content.router, prefix="/v1/content", tags=["content"])
app.include_router(purchases.router, prefix="/v1/purchases", tags=["purchases"])
app.include_router(products.router, prefix="/v1/products", tags=["products"])
app.include_router(redemptions.router, prefix="/v1/redemptions", tags=["redemptions"])
app.include_router(subscriptions.router, prefix="/v1/subscriptions", tags=["subscriptions"])
app.include_router(payments.router, prefix="/v1/payments", tags=["payments"])
app.include_router(overview.router, prefix="/v1/overview", tags=["overview"])
app.include_router(admin.router, prefix="/v1/admin", tags=["admin"])


@app.on_event("startup")
async def startup():
    if settings.sentry_dsn:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
        log.info("startup", msg="Sentry enabled")
    await init_db()
    log.info("startup", msg="DB connected")


@app.get("/health")
async def health():
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}
