# src/notify/failed_queue.py
"""File JSON (mảng) chứa notification đã hết lượt retry.

Mỗi lần append: đọc toàn bộ -> thêm -> ghi lại toàn bộ, tất cả dưới một
lock. Ghi qua file tạm + os.replace để file không bao giờ bị ghi dở.
"""
from __future__ import annotations
import asyncio
import json
import os
import tempfile
import threading
from typing import List

from domain.schemas import FailedQueueEntry, NotificationPayload
from observability.logging import get_logger

log = get_logger("notify.failed_queue")


class FailedQueue:
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _read_unlocked(self) -> List[dict]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError:
            return []
        if not raw.strip():
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            # không ghi đè file hỏng bằng mảng rỗng
            log.error("notify.failed_queue.corrupt", extra={"path": self.path, "err": str(e)})
            raise
        if not isinstance(data, list):
            raise ValueError(f"failed queue file is not a JSON array: {self.path}")
        return data

    def _write_unlocked(self, items: List[dict]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".failed-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(items, f, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def append_sync(self, payload: NotificationPayload, retries_exhausted: int) -> FailedQueueEntry:
        entry = FailedQueueEntry(payload=payload, retries_exhausted=retries_exhausted)
        with self._lock:
            items = self._read_unlocked()
            items.append(entry.model_dump(mode="json"))
            self._write_unlocked(items)
        return entry

    def read_all_sync(self) -> List[FailedQueueEntry]:
        with self._lock:
            items = self._read_unlocked()
        return [FailedQueueEntry.model_validate(i) for i in items]

    async def append(self, payload: NotificationPayload, retries_exhausted: int) -> FailedQueueEntry:
        return await asyncio.to_thread(self.append_sync, payload, retries_exhausted)

    async def read_all(self) -> List[FailedQueueEntry]:
        return await asyncio.to_thread(self.read_all_sync)

    async def count(self) -> int:
        """Số entry trong file; file thiếu / hỏng -> 0."""
        try:
            return len(await self.read_all())
        except (ValueError, OSError) as e:
            log.error("notify.failed_queue.count_failed", extra={"path": self.path, "err": str(e)})
            return 0
