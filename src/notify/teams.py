# src/notify/teams.py
from __future__ import annotations
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote
from zoneinfo import ZoneInfo

from domain.schemas import NotificationMeta, NotificationPayload, SignupUser

SIGNUP_TYPE = "user_signup"


def admin_panel_url(frontend_url: str) -> str:
    return f"{frontend_url.rstrip('/')}/pages/admin-panel.html"


def format_timestamp(when: datetime, tz_name: str = "Asia/Ho_Chi_Minh") -> str:
    # dd/mm/yyyy HH:MM:SS theo giờ địa phương của admin
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(ZoneInfo(tz_name)).strftime("%d/%m/%Y %H:%M:%S")


def build_signup_card(user: SignupUser, frontend_url: str, timestamp: str) -> Dict[str, Any]:
    """Adaptive Card (MS Teams incoming webhook) báo có user mới đăng ký."""
    panel = admin_panel_url(frontend_url)
    return {
        "attachments": [
            {
                "contentType": "application/vnd.microsoft.card.adaptive",
                "content": {
                    "$schema": "http://adaptivecards.io/schemas/adaptive-card.json",
                    "type": "AdaptiveCard",
                    "version": "1.4",
                    "body": [
                        {
                            "type": "TextBlock",
                            "size": "Large",
                            "weight": "Bolder",
                            "text": "🆕 New User Registration",
                            "wrap": True,
                        },
                        {
                            "type": "FactSet",
                            "facts": [
                                {"title": "Username:", "value": user.username},
                                {"title": "Full Name:", "value": user.full_name or "Not provided"},
                                {"title": "Email:", "value": user.email},
                                {"title": "Timestamp:", "value": timestamp},
                            ],
                        },
                    ],
                    "actions": [
                        {
                            "type": "Action.OpenUrl",
                            "title": "✅ Approve User",
                            "url": f"{panel}?action=approve&email={quote(user.email, safe='')}",
                        },
                        {
                            "type": "Action.OpenUrl",
                            "title": "👁️ View in Admin Panel",
                            "url": panel,
                        },
                    ],
                },
            }
        ]
    }


def build_signup_payload(
    user: SignupUser,
    frontend_url: str,
    tz_name: str = "Asia/Ho_Chi_Minh",
    now: Optional[datetime] = None,
) -> NotificationPayload:
    timestamp = format_timestamp(now or datetime.now(timezone.utc), tz_name)
    return NotificationPayload(
        body=build_signup_card(user, frontend_url, timestamp),
        meta=NotificationMeta(
            type=SIGNUP_TYPE,
            correlation_id=str(uuid.uuid4()),
            extra={"user_id": user.id, "email": user.email},
        ),
    )
