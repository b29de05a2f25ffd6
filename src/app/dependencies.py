from __future__ import annotations
from fastapi import Request

from chat.pipeline import ChatPipeline
from notify.queue import NotificationQueue
from storage.base import Storage


def get_pipeline(request: Request) -> ChatPipeline:
    return request.app.state.services.pipeline


def get_storage(request: Request) -> Storage:
    return request.app.state.services.storage


def get_notifier(request: Request) -> NotificationQueue:
    return request.app.state.services.notifier
