# src/domain/errors.py
"""Lỗi nghiệp vụ dùng chung.

Mọi lỗi hướng tới client đều kế thừa ChatError để app/main.py map về JSON
thống nhất ({"error", "code", "rid"}).
"""
from __future__ import annotations
from typing import Any


class ChatError(Exception):
    http_status = 500

    def __init__(self, code: str, message: str, **extra: Any):
        self.code = code
        self.message = message
        self.extra = extra
        super().__init__(message)


class ValidationFailed(ChatError):
    """Input sai shape / vượt giới hạn. Không bao giờ retry."""

    http_status = 400


class ConversationNotFound(ChatError):
    http_status = 404

    def __init__(self, conversation_id: str):
        super().__init__("conversation_not_found", "Conversation not found", conversation_id=conversation_id)


class ProviderError(ChatError):
    http_status = 502


class ProviderTimeout(ProviderError):
    http_status = 504

    def __init__(self, timeout_sec: float):
        super().__init__("provider_timeout", f"Generation timed out after {timeout_sec:g}s", timeout_sec=timeout_sec)


class TransportClosed(Exception):
    """Client đã ngắt kết nối; pipeline dừng đọc chunk từ provider."""
