from __future__ import annotations
from fastapi import Depends, HTTPException, status
from starlette.requests import HTTPConnection

from app.settings import SETTINGS
from observability.logging import get_logger

log = get_logger("auth")

class Identity:
    def __init__(self, user_id: str, role: str):
        self.user_id = user_id
        self.role = role


# Cache set key cho lookup nhanh; vẫn lấy từ env, rotate/revoke bằng cách chỉnh env rồi restart.
_ADMIN_KEYS_SET = set(SETTINGS.ADMIN_KEYS)
# admin key cũng là key hợp lệ
_API_KEYS_SET = set(SETTINGS.API_KEYS) | _ADMIN_KEYS_SET


def assert_auth_config_on_startup() -> None:
    """
    - ENV=prod + AUTH_MODE="none" -> raise RuntimeError (không cho startup).
    - AUTH_MODE="api_key" nhưng không có key nào -> log error, prod thì raise.
    - Dev (AUTH_MODE="none") -> cho phép nhưng log cảnh báo.
    """
    if SETTINGS.ENV == "prod" and SETTINGS.AUTH_MODE == "none":
        log.error("auth.misconfig", extra={"env": SETTINGS.ENV, "auth_mode": SETTINGS.AUTH_MODE})
        raise RuntimeError(
            "AUTH_MODE='none' is not allowed in prod. "
            "Set AUTH_MODE='api_key' and configure API_KEYS in environment."
        )

    if SETTINGS.AUTH_MODE == "api_key":
        if not _API_KEYS_SET:
            log.error("auth.api_keys.empty", extra={"env": SETTINGS.ENV, "auth_mode": SETTINGS.AUTH_MODE})
            if SETTINGS.ENV == "prod":
                raise RuntimeError(
                    "In prod, AUTH_MODE='api_key' requires at least one API key "
                    "configured via API_KEYS."
                )
        else:
            log.info(
                "auth.api_keys.loaded",
                extra={
                    "env": SETTINGS.ENV,
                    "count": len(_API_KEYS_SET),
                    "admin_count": len(_ADMIN_KEYS_SET),
                    # chỉ log prefix, không log full token
                    "prefixes": [k[:4] + "..." for k in _API_KEYS_SET],
                },
            )
    else:
        log.warning("auth.dev_mode", extra={"env": SETTINGS.ENV, "auth_mode": SETTINGS.AUTH_MODE})


def _bearer_token(conn: HTTPConnection) -> str | None:
    auth = conn.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip()
    # browser không gửi được header Authorization khi mở WebSocket
    if conn.scope.get("type") == "websocket":
        return conn.query_params.get("token")
    return None


def get_identity(conn: HTTPConnection) -> Identity:
    # Dev / test mode: AUTH_MODE="none"
    if SETTINGS.AUTH_MODE == "none":
        uid = conn.headers.get("x-user-id", "anon")
        role = conn.headers.get("x-user-role", SETTINGS.DEFAULT_ROLE)
        if role not in ("user", "admin"):
            role = SETTINGS.DEFAULT_ROLE
        return Identity(user_id=uid, role=role)

    token = _bearer_token(conn)
    client = conn.client.host if conn.client else None
    if not token:
        log.warning("auth.missing_token", extra={"client": client})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")

    token_prefix = token[:6]
    if token not in _API_KEYS_SET:
        # Log chỉ prefix, tuyệt đối không log full token
        log.warning("auth.invalid_token", extra={"token_prefix": token_prefix, "client": client})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    role = "admin" if token in _ADMIN_KEYS_SET else SETTINGS.DEFAULT_ROLE
    # user_id: dùng prefix để vào log/metrics, không để lộ toàn bộ token
    return Identity(user_id=f"key:{token_prefix}", role=role)


def require_role(role: str):
    def _dep(idt: Identity = Depends(get_identity)) -> Identity:
        if role == "admin" and idt.role != "admin":
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return idt

    return _dep
