# src/storage/redis_store.py
from __future__ import annotations
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from domain.schemas import Conversation, Resource, StoredMessage, SystemPrompt, UsageRecord
from observability.logging import get_logger
from storage.base import Storage, prompt_visible_to

log = get_logger("storage.redis")

_PREFIX = "gc:"


def _k(*parts: str) -> str:
    return _PREFIX + ":".join(parts)


class RedisStorage(Storage):
    """
    Storage trên Redis, mỗi record là 1 JSON document:
    - gc:conv:<id>            -> Conversation
    - gc:msgs:<conv_id>       -> LIST message (RPUSH, cũ -> mới)
    - gc:res:<conv_id>        -> LIST resource theo thứ tự attach
    - gc:prompt:<id>          -> SystemPrompt
    - gc:usage:<user_id>      -> LIST usage (LPUSH, mới -> cũ)
    - gc:touch:<conv_id>      -> ISO timestamp lần cập nhật cuối
    """

    def __init__(self, client):
        self._r = client

    # ---- seeding / admin ----
    async def save_conversation(self, conv: Conversation) -> None:
        await self._r.set(_k("conv", conv.conversation_id), conv.model_dump_json())

    async def attach_resource(self, conversation_id: str, resource: Resource) -> None:
        await self._r.rpush(_k("res", conversation_id), resource.model_dump_json())

    async def save_prompt(self, prompt: SystemPrompt) -> None:
        await self._r.set(_k("prompt", prompt.system_prompt_id), prompt.model_dump_json())

    # ---- Storage ----
    async def load_conversation(self, conversation_id: str, user_id: str) -> Optional[Conversation]:
        raw = await self._r.get(_k("conv", conversation_id))
        if not raw:
            return None
        conv = Conversation.model_validate_json(raw)
        return conv if conv.user_id == user_id else None

    async def load_recent_messages(self, conversation_id: str, limit: int) -> List[StoredMessage]:
        if limit <= 0:
            return []
        raw = await self._r.lrange(_k("msgs", conversation_id), -limit, -1)
        out: List[StoredMessage] = []
        for item in raw:
            try:
                out.append(StoredMessage.model_validate_json(item))
            except ValueError as e:
                # record hỏng -> bỏ qua, không làm fail cả request
                log.warning("storage.message.decode_failed", extra={"conversation_id": conversation_id, "err": str(e)})
        return out

    async def load_resources_for_conversation(self, conversation_id: str) -> List[Resource]:
        raw = await self._r.lrange(_k("res", conversation_id), 0, -1)
        return [Resource.model_validate_json(item) for item in raw]

    async def load_system_prompt(self, prompt_id: str, requester_id: str) -> Optional[SystemPrompt]:
        raw = await self._r.get(_k("prompt", prompt_id))
        if not raw:
            return None
        prompt = SystemPrompt.model_validate_json(raw)
        return prompt if prompt_visible_to(prompt, requester_id) else None

    async def persist_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredMessage:
        msg = StoredMessage(
            message_id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            metadata=metadata or {},
        )
        await self._r.rpush(_k("msgs", conversation_id), msg.model_dump_json())
        return msg

    async def touch_conversation(self, conversation_id: str) -> None:
        await self._r.set(_k("touch", conversation_id), datetime.now(timezone.utc).isoformat())

    async def record_usage(self, record: UsageRecord) -> None:
        await self._r.lpush(_k("usage", record.user_id), record.model_dump_json())

    async def list_usage(self, user_id: str, limit: int = 50, offset: int = 0) -> List[UsageRecord]:
        if limit <= 0:
            return []
        raw = await self._r.lrange(_k("usage", user_id), offset, offset + limit - 1)
        return [UsageRecord.model_validate_json(item) for item in raw]

    async def ping(self) -> bool:
        try:
            return (await self._r.ping()) is True
        except Exception as e:
            log.warning("storage.redis.ping_failed", extra={"err": str(e)})
            return False

    async def aclose(self) -> None:
        await self._r.aclose()
