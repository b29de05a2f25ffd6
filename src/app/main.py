from __future__ import annotations

import uuid, asyncio
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.settings import SETTINGS
from app.routers import health, notifications, rest, sse, ws
from app.bootstrap import Services, build_services
from domain.errors import ChatError
from observability.logging import set_request_id, get_request_id, get_logger
from observability.metrics import metrics_endpoint, metrics_middleware
from security.auth import assert_auth_config_on_startup

log = get_logger("app")

# thời gian tối đa chờ pipeline đang chạy ghi xong transcript khi shutdown
_SHUTDOWN_GRACE_SEC = 10.0


def create_app(services: Optional[Services] = None) -> FastAPI:
    """services != None: dùng collaborator truyền vào (test), không build từ SETTINGS."""
    app = FastAPI(title=SETTINGS.APP_NAME, debug=SETTINGS.DEBUG)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=SETTINGS.CORS_ALLOW_ORIGINS
        or (["*"] if SETTINGS.ENV == "dev" else SETTINGS.CORS_ALLOW_ORIGINS),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Metrics middleware
    app.middleware("http")(metrics_middleware)

    # Correlation-id + request size guard
    @app.middleware("http")
    async def _common_middlewares(request: Request, call_next):
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        set_request_id(rid)

        # size limit (nếu Content-Length có mặt)
        cl = request.headers.get("content-length")
        if cl and cl.isdigit() and int(cl) > SETTINGS.MAX_REQUEST_SIZE_BYTES:
            return JSONResponse(status_code=413, content={"error": "Request too large", "rid": rid})

        response = await call_next(request)
        response.headers["x-request-id"] = rid
        return response

    # Exception handlers (JSON hoá lỗi)
    @app.exception_handler(ChatError)
    async def _chat_error_handler(request: Request, exc: ChatError):
        log.warning("chat.error", extra={"code": exc.code, "err": exc.message, **exc.extra})
        return JSONResponse(
            status_code=exc.http_status,
            content={"error": exc.message, "code": exc.code, "rid": get_request_id()},
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_exc_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail, "rid": request.headers.get("x-request-id")},
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={"error": "ValidationError", "details": jsonable_encoder(exc.errors(), custom_encoder={Exception: str})},
        )

    @app.exception_handler(Exception)
    async def _unhandled_handler(request: Request, exc: Exception):
        log.error("unhandled", extra={"err": str(exc)})
        return JSONResponse(status_code=500, content={"error": "InternalServerError"})

    # Routers
    app.include_router(health.router)
    app.include_router(rest.router, prefix=f"/{SETTINGS.API_V1_STR}")
    app.include_router(sse.router, prefix=f"/{SETTINGS.API_V1_STR}")
    app.include_router(ws.router, prefix=f"/{SETTINGS.API_V1_STR}")
    app.include_router(notifications.router, prefix=f"/{SETTINGS.API_V1_STR}")

    # /metrics
    @app.get("/metrics")
    def _metrics():
        return metrics_endpoint()

    # Shared semaphore cho số stream song song (SSE + WebSocket)
    app.state.stream_sem = asyncio.Semaphore(max(1, SETTINGS.MAX_CONCURRENT_STREAMS))
    # task pipeline của SSE, sống lâu hơn response
    app.state.bg_tasks = set()
    app.state.services = services

    @app.on_event("startup")
    async def _startup():
        assert_auth_config_on_startup()
        if app.state.services is None:
            app.state.services = build_services(SETTINGS)

    @app.on_event("shutdown")
    async def _shutdown():
        tasks = list(app.state.bg_tasks)
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=_SHUTDOWN_GRACE_SEC)
            for t in pending:
                t.cancel()
            if pending:
                log.warning("shutdown.streams.cancelled", extra={"count": len(pending)})
        svc = app.state.services
        if svc is not None:
            await svc.aclose()

    return app


app = create_app()
