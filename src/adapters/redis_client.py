from __future__ import annotations
import redis.asyncio as redis

from app.settings import Settings
from observability.logging import get_logger

log = get_logger("redis")


def create_redis(settings: Settings) -> redis.Redis:
    """
    Tạo Redis client (async) cho storage. Không còn singleton: bootstrap giữ
    instance và đóng khi shutdown.

    Đã cấu hình:
    - socket_timeout: thời gian chờ mỗi command.
    - socket_connect_timeout: thời gian chờ khi connect.
    - health_check_interval: kiểm tra connection định kỳ.
    - retry_on_timeout: retry command khi gặp timeout.
    """
    log.info(
        "redis.client.init",
        extra={
            "url": settings.REDIS_URL,
            "socket_timeout": settings.REDIS_SOCKET_TIMEOUT_SEC,
            "connect_timeout": settings.REDIS_CONNECT_TIMEOUT_SEC,
            "health_check_interval": settings.REDIS_HEALTH_CHECK_INTERVAL_SEC,
            "retry_on_timeout": settings.REDIS_RETRY_ON_TIMEOUT,
        },
    )
    return redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SEC,
        socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT_SEC,
        health_check_interval=settings.REDIS_HEALTH_CHECK_INTERVAL_SEC,
        retry_on_timeout=settings.REDIS_RETRY_ON_TIMEOUT,
    )
