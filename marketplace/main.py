from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm.exc import StaleDataError
from starlette.exceptions import HTTPException as StarletteHTTPException

from marketplace.api.routes_demo import router as demo_router
from marketplace.api.routes_fulfillment import router as fulfillment_router
from marketplace.api.routes_orders import router as orders_router
from marketplace.core.config import get_settings
from marketplace.core.errors import MarketplaceError
from marketplace.core.logging import configure_logging
from marketplace.demo.catalog import seed_demo_catalog
from marketplace.persistence.pg import init_db, session_scope

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title=settings.app_name)


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    if settings.bootstrap_demo_on_startup:
        with session_scope() as session:
            result = seed_demo_catalog(session, low_stock_threshold=settings.low_stock_threshold)
        logger.info(
            "demo catalog ready: catalog_id=%s seeded_now=%s",
            result.get("catalog_id"),
            result.get("seeded_now"),
        )


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500 or not exc.is_operational:
        logger.error("request failed: path=%s code=%s detail=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


_HTTP_ERROR_CODES = {
    401: "NOT_AUTHENTICATED",
    403: "NOT_AUTHORIZED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": _HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "invalid request")
    return JSONResponse(
        status_code=400,
        content={
            "detail": f"{location}: {message}" if location else message,
            "error": "VALIDATION_ERROR",
            "fields": [
                {"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg"), "type": e.get("type")}
                for e in errors
            ],
        },
    )


@app.exception_handler(StaleDataError)
async def stale_data_handler(request: Request, exc: StaleDataError):
    logger.warning("concurrent order update rejected: path=%s error=%s", request.url.path, exc)
    return JSONResponse(
        status_code=409,
        content={"detail": "order was modified concurrently; reload and retry", "error": "ORDER_CONFLICT"},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error: method=%s path=%s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "internal server error", "error": "INTERNAL_ERROR"})


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(orders_router)
app.include_router(fulfillment_router)
app.include_router(demo_router)
