# src/observability/logging.py
from __future__ import annotations
import logging, os, sys, json, time
from contextvars import ContextVar
from typing import Optional

_request_id: ContextVar[str] = ContextVar("_request_id", default="-")

RESERVED = {
    "name","msg","args","levelname","levelno","pathname","filename","module",
    "exc_info","exc_text","stack_info","lineno","funcName","created","msecs",
    "relativeCreated","thread","threadName","processName","process","taskName",
}

class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "t": int(time.time() * 1000),
            "lvl": record.levelname,
            "msg": record.getMessage(),
            "logger": record.name,
            "rid": _request_id.get(),
        }
        for k, v in record.__dict__.items():
            if k not in RESERVED and k not in payload:
                payload[k] = v
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)

def _level() -> int:
    # đọc env trực tiếp để logging dùng được trước khi SETTINGS load xong
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
    return level if isinstance(level, int) else logging.INFO

def get_logger(name: str, log_file: Optional[str] = None) -> logging.Logger:
    """Logger JSON ra stdout; log_file != None thì ghi thêm vào file (vd. notifications.log)."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    h = logging.StreamHandler(sys.stdout)
    h.setFormatter(JsonFormatter())
    logger.addHandler(h)
    if log_file:
        try:
            os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
            fh = logging.FileHandler(log_file, encoding="utf-8")
            fh.setFormatter(JsonFormatter())
            logger.addHandler(fh)
        except OSError as e:
            logger.warning("log.file.unavailable", extra={"path": log_file, "err": str(e)})
    logger.setLevel(_level())
    logger.propagate = False
    return logger

def set_request_id(rid: str) -> None:
    _request_id.set(rid)

def get_request_id() -> str:
    return _request_id.get()
