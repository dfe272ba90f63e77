from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from psycopg import errors as pg_errors
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import uuid
from datetime import datetime, timezone
from .routers.auth import router as auth_router
from .routers.cash_sessions import router as cash_sessions_router
from .routers.checkout import router as checkout_router
from .routers.sync import router as sync_router
from .routers.receipt import router as receipt_router
from .routers.heartbeat import router as heartbeat_router
from .routers.settings import router as settings_router
from .routers.integrations import router as integrations_router
from .routers.stores import router as stores_router
from .routers.categories import router as categories_router
from .routers.customers import router as customers_router
from .routers.products import router as products_router
from .routers.stock_movements import router as stock_movements_router
from .routers.sales import router as sales_router
from .routers.proformas import router as proformas_router
from .routers.users import router as users_router
from .routers.reports import router as reports_router
from .config import settings
from .db import probe_db, close_pools
from .logs import json_log

SERVICE_NAME = "nextstock-backend"

app = FastAPI(title="Next Stock POS API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", None) or ""


def _debug() -> bool:
    return settings.env in {"local", "dev"}


def error_response(status_code: int, error, headers=None, **extra) -> JSONResponse:
    """Every failure leaves the API as `{"success": false, "error": ...}`."""
    content = {"success": False, "error": error, **extra}
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content), headers=headers)


@app.exception_handler(StarletteHTTPException)
def _http_exception(_req: Request, exc: StarletteHTTPException):
    detail = exc.detail
    # Structured details (e.g. {"error": ..., "requires_approval": ...}) are merged into the envelope.
    headers = getattr(exc, "headers", None)
    if isinstance(detail, dict):
        extra = {k: v for k, v in detail.items() if k not in {"success", "error"}}
        return error_response(exc.status_code, detail.get("error") or "Request failed", headers=headers, **extra)
    return error_response(exc.status_code, detail, headers=headers)


# Map common DB constraint/cast errors to 4xx so clients get actionable responses
# instead of generic 500s.
@app.exception_handler(pg_errors.InvalidTextRepresentation)
def _invalid_text_representation(_req: Request, exc: Exception):
    extra = {"detail": str(exc)} if _debug() else {}
    return error_response(400, "Invalid value", **extra)


@app.exception_handler(pg_errors.ForeignKeyViolation)
def _foreign_key_violation(_req: Request, exc: Exception):
    extra = {"detail": str(exc)} if _debug() else {}
    return error_response(400, "Invalid reference", **extra)


@app.exception_handler(pg_errors.UniqueViolation)
def _unique_violation(_req: Request, exc: Exception):
    extra = {"detail": str(exc)} if _debug() else {}
    return error_response(409, "Record already exists", **extra)


@app.exception_handler(pg_errors.CheckViolation)
def _check_violation(_req: Request, exc: Exception):
    extra = {"detail": str(exc)} if _debug() else {}
    return error_response(400, "Constraint violation", **extra)


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg") or "Validation failed"
    error = f"{field}: {message}" if field else message
    extra = {"errors": errors} if _debug() else {}
    return error_response(422, error, **extra)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    extra = {"detail": str(exc)} if _debug() else {}
    return error_response(500, "Internal server error", request_id=rid, **extra)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = (request.client.host if request.client else None)

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if path not in {"/health", "/heartbeat"}:
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=dur_ms,
        )
    return response

# The dashboard and POS clients run on a different origin during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth_router)
app.include_router(cash_sessions_router)
app.include_router(checkout_router)
app.include_router(sync_router)
app.include_router(receipt_router)
app.include_router(heartbeat_router)
app.include_router(settings_router)
app.include_router(integrations_router)
app.include_router(stores_router)
app.include_router(categories_router)
app.include_router(customers_router)
app.include_router(products_router)
app.include_router(stock_movements_router)
app.include_router(sales_router)
app.include_router(proformas_router)
app.include_router(users_router)
app.include_router(reports_router)


@app.on_event("startup")
def _startup():
    ok, err = probe_db()
    if ok:
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    else:
        json_log("warning", "startup.db_probe_failed", env=settings.env, error=err)


@app.on_event("shutdown")
def _shutdown():
    close_pools()


@app.get("/")
def root():
    return {"status": "ok", "service": "api"}


@app.get("/health")
def health(req: Request):
    request_id = _current_request_id(req)
    ok, err = probe_db()
    if not ok:
        content = {
            "status": "degraded",
            "env": settings.env,
            "db": "down",
            "service": SERVICE_NAME,
            "version": settings.api_version,
            "started_at": STARTED_AT_UTC.isoformat(),
            "request_id": request_id,
        }
        if _debug():
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return {
        "status": "ok",
        "env": settings.env,
        "db": "ok",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": request_id,
    }


@app.get("/health/live")
def health_live(req: Request):
    return {
        "status": "ok",
        "env": settings.env,
        "service": SERVICE_NAME,
        "request_id": _current_request_id(req),
    }


@app.get("/health/ready")
def health_ready(req: Request):
    request_id = _current_request_id(req)
    ok, err = probe_db()
    if not ok:
        content = {
            "status": "degraded",
            "env": settings.env,
            "db": "down",
            "service": SERVICE_NAME,
            "version": settings.api_version,
            "request_id": request_id,
        }
        if _debug():
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return {
        "status": "ready",
        "env": settings.env,
        "db": "ok",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "request_id": request_id,
    }


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
