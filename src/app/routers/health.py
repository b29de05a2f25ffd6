from __future__ import annotations

import time
from fastapi import APIRouter, Request

from app.settings import SETTINGS

router = APIRouter()

_last_ready_check = {"t": 0.0, "status": {"ok": False}}


@router.get("/health")
async def health():
    # Liveness đơn giản: process còn sống / server chạy
    return {"ok": True}


@router.get("/ready")
async def ready(request: Request):
    """
    Readiness check:

    - services: storage / provider / notifier đã được build.
    - storage: ping OK (memory luôn OK, redis thì PING thật).
    - provider: object tồn tại và circuit breaker không mở.

    Kết quả cache READY_CHECK_CACHE_SEC giây để /ready không tạo tải lên redis.
    """
    now = time.time()
    if now - _last_ready_check["t"] < SETTINGS.READY_CHECK_CACHE_SEC:
        return _last_ready_check["status"]

    status = {
        "services": False,
        "storage": False,
        "provider": False,
        "failed_notifications": None,
        "ok": False,
    }

    services = getattr(request.app.state, "services", None)
    status["services"] = services is not None

    if services is not None:
        try:
            status["storage"] = bool(await services.storage.ping())
        except Exception:
            status["storage"] = False

        breaker = getattr(services.provider, "breaker", None)
        status["provider"] = not (breaker is not None and breaker.is_open("ready"))

        # chỉ mang tính thông tin, không ảnh hưởng "ok"
        status["failed_notifications"] = await services.failed_queue.count()

    status["ok"] = status["services"] and status["storage"] and status["provider"]

    _last_ready_check["t"] = now
    _last_ready_check["status"] = status
    return status
