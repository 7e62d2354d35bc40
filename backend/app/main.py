from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from shopline.errors import ErrorKind, PosError
from shopline.logs import json_log
from .routers.products import router as products_router
from .routers.inventory import router as inventory_router
from .routers.sales import router as sales_router
from .config import settings
from .deps import get_session
from .db import get_conn, close_pools

app = FastAPI(title="Shopline POS API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


@app.exception_handler(PosError)
def _pos_error(req: Request, exc: PosError):
    status = exc.kind.http_status
    if status >= 500:
        json_log(
            "error",
            "http.request.failed",
            request_id=_current_request_id(req),
            method=req.method,
            path=req.url.path,
            kind=exc.kind.value,
            error=exc.message,
        )
    return JSONResponse(status_code=status, content=exc.to_dict())


# DB constraint/cast errors that reach the boundary are client mistakes (or a
# create race between two devices), not server faults.
_PG_ERROR_KINDS = {
    pg_errors.UniqueViolation: (ErrorKind.CONFLICT, "conflict"),
    pg_errors.ForeignKeyViolation: (ErrorKind.VALIDATION, "invalid reference"),
    pg_errors.CheckViolation: (ErrorKind.VALIDATION, "constraint violation"),
    pg_errors.InvalidTextRepresentation: (ErrorKind.VALIDATION, "invalid value"),
}


def _pg_error(_req: Request, exc: Exception):
    kind, detail = next(v for t, v in _PG_ERROR_KINDS.items() if isinstance(exc, t))
    content = {"detail": detail, "kind": kind.value}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=kind.http_status, content=content)


for _exc_type in _PG_ERROR_KINDS:
    app.add_exception_handler(_exc_type, _pg_error)


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed", "kind": "validation"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


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
    content = {"detail": "internal error", "kind": "transaction", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


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
    if path != "/health":
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

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(products_router, dependencies=[Depends(get_session)])
app.include_router(inventory_router, dependencies=[Depends(get_session)])
app.include_router(sales_router, dependencies=[Depends(get_session)])


def _db_health():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, str(exc)


@app.on_event("startup")
def _startup():
    ok, err = _db_health()
    if ok:
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    else:
        json_log("warning", "startup.db_probe_failed", env=settings.env, error=err)


@app.on_event("shutdown")
def _shutdown():
    close_pools()


@app.get("/health")
def health(req: Request):
    request_id = _current_request_id(req)
    ok, err = _db_health()
    content = {
        "status": "ok" if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "service": "shopline-backend",
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": request_id,
    }
    if not ok:
        if settings.env in {"local", "dev"}:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return content


@app.get("/health/live")
def health_live(req: Request):
    return {
        "status": "ok",
        "env": settings.env,
        "service": "shopline-backend",
        "request_id": _current_request_id(req),
    }
