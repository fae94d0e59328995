from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from .routers.stock_counts import router as stock_counts_router
from .config import settings
from .deps import require_company_access
from .db import get_admin_conn, close_pools
from .obs import json_log
from .stock_counts.errors import StockCountError

app = FastAPI(title="Stock Count Engine API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


# Engine errors carry their own status code and a structured payload.
@app.exception_handler(StockCountError)
def _stock_count_error(req: Request, exc: StockCountError):
    level = "error" if exc.status_code >= 500 else "info"
    json_log(
        level,
        "stock_count.error",
        request_id=_current_request_id(req),
        path=req.url.path,
        code=exc.code,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.to_dict()})


# DB constraint/cast errors that escape the engine become 4xx with a short detail.
_PG_ERROR_RESPONSES = {
    pg_errors.InvalidTextRepresentation: (400, "invalid value"),  # e.g. malformed uuid in a path
    pg_errors.ForeignKeyViolation: (400, "invalid reference"),
    pg_errors.CheckViolation: (400, "constraint violation"),
    pg_errors.UniqueViolation: (409, "conflict"),
    pg_errors.LockNotAvailable: (409, "stock count is busy, retry shortly"),
}


def _pg_error_handler(status_code: int, detail: str):
    def _handler(_req: Request, exc: Exception):
        content = {"detail": detail}
        if settings.expose_errors:
            content["error"] = str(exc)
        return JSONResponse(status_code=status_code, content=content)
    return _handler


for _exc_type, (_status, _detail) in _PG_ERROR_RESPONSES.items():
    app.add_exception_handler(_exc_type, _pg_error_handler(_status, _detail))


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.expose_errors and hasattr(exc, "errors"):
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
    content = {"detail": "internal error", "request_id": rid}
    if settings.expose_errors:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


def _request_fields(request: Request, rid: str, started: float) -> dict:
    return {
        "request_id": rid,
        "method": request.method,
        "path": request.url.path,
        "company_id": request.headers.get("X-Company-Id"),
        "client_ip": request.client.host if request.client else None,
        "duration_ms": int((time.perf_counter() - started) * 1000),
    }


# Correlation id + one structured line per request.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        json_log("error", "http.request.error", error=str(exc), **_request_fields(request, rid, started))
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if not request.url.path.startswith("/health"):
        json_log("info", "http.request", status_code=response.status_code, **_request_fields(request, rid, started))
    return response

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(stock_counts_router, dependencies=[Depends(require_company_access)])


def _db_health():
    try:
        with get_admin_conn() as conn:
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


def _service_info(req: Request) -> dict:
    return {
        "service": "stock-count-engine",
        "env": settings.env,
        "version": settings.api_version,
        "request_id": _current_request_id(req),
    }


@app.get("/health")
def health(req: Request):
    ok, err = _db_health()
    content = {
        "status": "ok" if ok else "degraded",
        "db": "ok" if ok else "down",
        "started_at": STARTED_AT_UTC.isoformat(),
        **_service_info(req),
    }
    if ok:
        return content
    if settings.expose_errors:
        content["error"] = err
    return JSONResponse(status_code=503, content=content)


@app.get("/health/live")
def health_live(req: Request):
    return {"status": "ok", **_service_info(req)}
