from __future__ import annotations
from typing import Any, Dict, List, Optional

from domain.schemas import Conversation, Resource, StoredMessage, SystemPrompt, UsageRecord


class Storage:
    """Contract của storage collaborator mà pipeline tiêu thụ.

    Mọi call đều "thành công hoặc raise"; core không tự retry lỗi storage.
    """

    async def load_conversation(self, conversation_id: str, user_id: str) -> Optional[Conversation]:
        raise NotImplementedError

    async def load_recent_messages(self, conversation_id: str, limit: int) -> List[StoredMessage]:
        """N message cuối, theo thứ tự thời gian tăng dần."""
        raise NotImplementedError

    async def load_resources_for_conversation(self, conversation_id: str) -> List[Resource]:
        raise NotImplementedError

    async def load_system_prompt(self, prompt_id: str, requester_id: str) -> Optional[SystemPrompt]:
        """Chỉ trả prompt nếu requester là owner hoặc prompt là public + system."""
        raise NotImplementedError

    async def persist_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredMessage:
        raise NotImplementedError

    async def touch_conversation(self, conversation_id: str) -> None:
        raise NotImplementedError

    async def record_usage(self, record: UsageRecord) -> None:
        raise NotImplementedError

    async def list_usage(self, user_id: str, limit: int = 50, offset: int = 0) -> List[UsageRecord]:
        """Usage record của user, mới nhất trước."""
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


def prompt_visible_to(prompt: SystemPrompt, requester_id: str) -> bool:
    return prompt.user_id == requester_id or (prompt.is_public and prompt.is_system)
