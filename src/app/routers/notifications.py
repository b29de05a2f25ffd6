from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from app.dependencies import get_notifier
from app.settings import SETTINGS
from domain.schemas import SignupUser
from notify.queue import NotificationQueue
from notify.teams import build_signup_payload
from security.auth import Identity, require_role

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.post("/signup", status_code=status.HTTP_202_ACCEPTED)
async def notify_signup(
    user: SignupUser,
    notifier: NotificationQueue = Depends(get_notifier),
    idt: Identity = Depends(require_role("user")),
):
    """Hook của luồng đăng ký: fire-and-forget, không chờ webhook."""
    payload = build_signup_payload(user, SETTINGS.FRONTEND_URL, SETTINGS.NOTIFY_TIMEZONE)
    notifier.enqueue(payload)
    return {"queued": True, "correlation_id": payload.meta.correlation_id}


@router.get("/failed")
async def failed_notifications(
    limit: int = Query(100, ge=1, le=1000),
    notifier: NotificationQueue = Depends(get_notifier),
    idt: Identity = Depends(require_role("admin")),
):
    entries = await notifier.failed_queue.read_all()
    return {
        "count": len(entries),
        "items": [e.model_dump(mode="json") for e in entries[-limit:]],
    }
