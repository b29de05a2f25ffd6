# src/notify/queue.py
"""Giao notification qua webhook: fire-and-forget, retry cố định, hết lượt -> failed queue.

enqueue() trả về ngay; mỗi attempt là 1 task trên event loop, mỗi retry là
1 timer loop.call_later độc lập. At-least-once: có thể gửi trùng.
"""
from __future__ import annotations
import asyncio
import logging
from typing import Dict, Optional, Set

import httpx

from domain.schemas import NotificationPayload
from notify.failed_queue import FailedQueue
from observability.logging import get_logger
from observability.metrics import NOTIFY_ATTEMPTS, NOTIFY_FAILED_QUEUE, safe_inc


class NotificationQueue:
    def __init__(
        self,
        webhook_url: Optional[str],
        failed_queue: FailedQueue,
        retry_delay_sec: float = 300.0,
        max_retries: int = 2,
        timeout_sec: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.webhook_url = webhook_url
        self.failed_queue = failed_queue
        self.retry_delay_sec = max(0.0, retry_delay_sec)
        self.max_retries = max(0, max_retries)
        self.log = logger or get_logger("notify")
        self._client = httpx.AsyncClient(timeout=timeout_sec, transport=transport)
        self._tasks: Set[asyncio.Task] = set()
        # timer đang chờ retry -> (payload, attempt kế tiếp)
        self._timers: Dict[asyncio.TimerHandle, tuple] = {}
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1

    # ----------- public -----------
    def enqueue(self, payload: NotificationPayload) -> None:
        """Không chặn caller, không raise lỗi giao hàng."""
        if self._closed:
            self.log.warning(
                "notify.enqueue.closed",
                extra={"type": payload.meta.type, "correlation_id": payload.meta.correlation_id},
            )
            return
        self._inflight += 1
        self._idle.clear()
        self._spawn(payload, 1)

    async def join(self) -> None:
        """Chờ tới khi mọi payload đã enqueue được giao xong hoặc vào failed queue."""
        await self._idle.wait()

    async def shutdown(self) -> None:
        """Huỷ timer + task đang chạy. Payload đang chờ retry được ghi vào failed queue."""
        self._closed = True
        pending = list(self._timers.items())
        self._timers.clear()
        for handle, (payload, next_attempt) in pending:
            handle.cancel()
            await self._park(payload, next_attempt - 1, reason="shutdown")

        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._client.aclose()

    # ----------- internals -----------
    def _spawn(self, payload: NotificationPayload, attempt: int) -> None:
        task = asyncio.get_running_loop().create_task(self._run(payload, attempt))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _fire_timer(self, handle_ref: list, payload: NotificationPayload, attempt: int) -> None:
        self._timers.pop(handle_ref[0], None)
        if self._closed:
            return
        self._spawn(payload, attempt)

    def _done(self) -> None:
        self._inflight = max(0, self._inflight - 1)
        if self._inflight == 0:
            self._idle.set()

    async def _attempt(self, payload: NotificationPayload, attempt: int) -> bool:
        meta = payload.meta
        fields = {
            "type": meta.type,
            "correlation_id": meta.correlation_id,
            "attempt": attempt,
            "max_attempts": self.total_attempts,
        }
        if not self.webhook_url:
            self.log.warning("notify.attempt.failed", extra={**fields, "err": "webhook_url_not_configured"})
            safe_inc(NOTIFY_ATTEMPTS, meta.type, "failed")
            return False
        try:
            resp = await self._client.post(self.webhook_url, json=payload.body)
        except httpx.HTTPError as e:
            self.log.warning("notify.attempt.failed", extra={**fields, "err": str(e) or type(e).__name__})
            safe_inc(NOTIFY_ATTEMPTS, meta.type, "failed")
            return False

        if resp.is_success:
            self.log.info("notify.attempt.ok", extra={**fields, "status": resp.status_code})
            safe_inc(NOTIFY_ATTEMPTS, meta.type, "ok")
            return True

        self.log.warning(
            "notify.attempt.failed",
            extra={**fields, "status": resp.status_code, "err": resp.text[:500]},
        )
        safe_inc(NOTIFY_ATTEMPTS, meta.type, "failed")
        return False

    async def _park(self, payload: NotificationPayload, attempts_made: int, reason: str) -> None:
        try:
            await self.failed_queue.append(payload, retries_exhausted=attempts_made)
        except Exception as e:
            self.log.error(
                "notify.failed_queue.append_failed",
                extra={"type": payload.meta.type, "correlation_id": payload.meta.correlation_id, "err": str(e)},
            )
        else:
            safe_inc(NOTIFY_FAILED_QUEUE, payload.meta.type)
            self.log.error(
                "notify.exhausted" if reason == "exhausted" else "notify.parked",
                extra={
                    "type": payload.meta.type,
                    "correlation_id": payload.meta.correlation_id,
                    "attempts": attempts_made,
                    "reason": reason,
                    "path": self.failed_queue.path,
                },
            )
        finally:
            self._done()

    async def _run(self, payload: NotificationPayload, attempt: int) -> None:
        try:
            ok = await self._attempt(payload, attempt)
        except asyncio.CancelledError:
            # shutdown giữa attempt: vẫn phải giữ payload
            await asyncio.shield(self._park(payload, attempt, reason="shutdown"))
            raise
        except Exception as e:
            self.log.error(
                "notify.attempt.error",
                extra={"type": payload.meta.type, "correlation_id": payload.meta.correlation_id, "err": str(e)},
            )
            ok = False

        if ok:
            self._done()
            return

        if attempt < self.total_attempts and not self._closed:
            self.log.info(
                "notify.retry.scheduled",
                extra={
                    "type": payload.meta.type,
                    "correlation_id": payload.meta.correlation_id,
                    "next_attempt": attempt + 1,
                    "delay_sec": self.retry_delay_sec,
                },
            )
            ref: list = []
            handle = asyncio.get_running_loop().call_later(
                self.retry_delay_sec, self._fire_timer, ref, payload, attempt + 1
            )
            ref.append(handle)
            self._timers[handle] = (payload, attempt + 1)
            return

        if attempt < self.total_attempts:
            await self._park(payload, attempt, reason="shutdown")
        else:
            await self._park(payload, self.total_attempts, reason="exhausted")
