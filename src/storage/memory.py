from __future__ import annotations
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from domain.schemas import Conversation, Resource, StoredMessage, SystemPrompt, UsageRecord
from storage.base import Storage, prompt_visible_to


class InMemoryStorage(Storage):
    """Storage trong RAM cho dev / test. Không bền vững qua restart."""

    def __init__(self):
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[StoredMessage]] = {}
        self.resources: Dict[str, List[Resource]] = {}
        self.prompts: Dict[str, SystemPrompt] = {}
        self.usage: List[UsageRecord] = []
        self.touched: Dict[str, datetime] = {}

    # ---- seeding (dev / test) ----
    def add_conversation(self, conv: Conversation) -> Conversation:
        self.conversations[conv.conversation_id] = conv
        self.messages.setdefault(conv.conversation_id, [])
        self.resources.setdefault(conv.conversation_id, [])
        return conv

    def attach_resource(self, conversation_id: str, resource: Resource) -> Resource:
        self.resources.setdefault(conversation_id, []).append(resource)
        return resource

    def add_prompt(self, prompt: SystemPrompt) -> SystemPrompt:
        self.prompts[prompt.system_prompt_id] = prompt
        return prompt

    # ---- Storage ----
    async def load_conversation(self, conversation_id: str, user_id: str) -> Optional[Conversation]:
        conv = self.conversations.get(conversation_id)
        if conv is None or conv.user_id != user_id:
            return None
        return conv

    async def load_recent_messages(self, conversation_id: str, limit: int) -> List[StoredMessage]:
        msgs = self.messages.get(conversation_id, [])
        if limit <= 0:
            return []
        return list(msgs[-limit:])

    async def load_resources_for_conversation(self, conversation_id: str) -> List[Resource]:
        return list(self.resources.get(conversation_id, []))

    async def load_system_prompt(self, prompt_id: str, requester_id: str) -> Optional[SystemPrompt]:
        prompt = self.prompts.get(prompt_id)
        if prompt is None or not prompt_visible_to(prompt, requester_id):
            return None
        return prompt

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
        self.messages.setdefault(conversation_id, []).append(msg)
        return msg

    async def touch_conversation(self, conversation_id: str) -> None:
        self.touched[conversation_id] = datetime.now(timezone.utc)

    async def record_usage(self, record: UsageRecord) -> None:
        self.usage.append(record)

    async def list_usage(self, user_id: str, limit: int = 50, offset: int = 0) -> List[UsageRecord]:
        mine = [r for r in reversed(self.usage) if r.user_id == user_id]
        return mine[offset : offset + limit]
