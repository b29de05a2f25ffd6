# src/prompt/context.py
"""Dựng GenerationRequest từ lịch sử hội thoại + resource đang gắn.

Lịch sử bị lỗi (role lệch, mở đầu bằng model, ...) được sửa best-effort,
không bao giờ làm fail request. Chỉ lỗi shape thật sự (vd. quá nhiều URL)
mới raise ValidationFailed, và luôn trước khi gọi provider.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from domain.errors import ValidationFailed
from domain.schemas import (
    Conversation,
    ConversationTurn,
    FileData,
    GenerationRequest,
    Part,
    Resource,
    StoredMessage,
    ToolsConfig,
)
from observability.logging import get_logger
from prompt.defaults import URL_INSTRUCTION_HEADER
from storage.base import Storage

log = get_logger("context")

MAX_URLS_PER_REQUEST = 20


def _turn_role(stored_role: str) -> str:
    return "model" if stored_role == "assistant" else "user"


def normalize_history(messages: Sequence[StoredMessage]) -> List[ConversationTurn]:
    """History hợp lệ: bắt đầu bằng user, xen kẽ user/model.

    Message cuối bị bỏ (nó là current message). Entry phá vỡ luân phiên bị
    loại, không bao giờ đảo thứ tự.
    """
    turns = [
        ConversationTurn(role=_turn_role(m.role), parts=[Part(text=m.content)])
        for m in list(messages)[:-1]
    ]

    start = 0
    while start < len(turns) and turns[start].role == "model":
        start += 1

    valid: List[ConversationTurn] = []
    expected = "user"
    for turn in turns[start:]:
        if turn.role == expected:
            valid.append(turn)
            expected = "model" if expected == "user" else "user"
    return valid


def partition_resources(
    resources: Sequence[Resource],
    max_urls: int = MAX_URLS_PER_REQUEST,
) -> Tuple[List[FileData], List[str]]:
    files: List[FileData] = []
    urls: List[str] = []
    for r in resources:
        if r.resource_type == "file":
            # file chưa có handle từ provider -> không gửi được, bỏ qua
            if not r.url or not r.mime_type:
                log.info("context.file.skipped", extra={"resource_id": r.resource_id})
                continue
            files.append(FileData(file_uri=r.url, mime_type=r.mime_type))
        elif r.resource_type == "url" and r.url:
            urls.append(r.url)

    if len(urls) > max_urls:
        raise ValidationFailed(
            "too_many_urls",
            f"Maximum {max_urls} URLs allowed per request",
            url_count=len(urls),
        )
    return files, urls


def build_user_metadata(
    resources: Sequence[Resource],
    resource_ids: Sequence[str],
    urls: Sequence[str],
) -> Dict[str, Any]:
    """Metadata cho user message.

    attachments: chỉ file client chọn cho message này (resource_ids);
    urls: mọi URL đang được gửi kèm làm ngữ cảnh.
    """
    wanted = set(resource_ids)
    picked = [r for r in resources if r.resource_id in wanted]
    meta: Dict[str, Any] = {}
    attachments = [
        {
            "resource_id": r.resource_id,
            "name": r.name,
            "file_path": r.file_path,
            "mime_type": r.mime_type,
            "file_size": r.file_size,
        }
        for r in picked
        if r.resource_type == "file"
    ]
    if attachments:
        meta["attachments"] = attachments
    if urls:
        meta["urls"] = list(urls)
    return meta


def build_message_parts(text: str, files: Sequence[FileData], urls: Sequence[str]) -> ConversationTurn:
    message_text = text
    if urls:
        message_text += URL_INSTRUCTION_HEADER + "\n".join(urls)
    parts = [Part(text=message_text)]
    # mime type lấy từ lúc upload, không detect lại
    parts.extend(Part(file_data=f) for f in files)
    return ConversationTurn(role="user", parts=parts)


def select_tools(urls: Sequence[str]) -> ToolsConfig:
    if urls:
        return ToolsConfig(url_context=True, web_search=True)
    return ToolsConfig(url_context=False, web_search=True)


async def resolve_system_instruction(
    conversation: Conversation,
    requester_id: str,
    storage: Storage,
    mode_defaults: Dict[str, str],
) -> Optional[str]:
    """explicit prompt id -> default theo mode -> None. Không bao giờ raise."""
    if conversation.system_prompt_id:
        try:
            prompt = await storage.load_system_prompt(conversation.system_prompt_id, requester_id)
        except Exception as e:
            log.warning(
                "context.prompt.load_failed",
                extra={"system_prompt_id": conversation.system_prompt_id, "err": str(e)},
            )
            prompt = None
        if prompt is not None and prompt.prompt_text:
            return prompt.prompt_text
        log.info(
            "context.prompt.fallback",
            extra={"system_prompt_id": conversation.system_prompt_id, "chat_mode": conversation.chat_mode},
        )

    return mode_defaults.get(conversation.chat_mode) or None


@dataclass
class AssembledContext:
    request: GenerationRequest
    user_metadata: Dict[str, Any] = field(default_factory=dict)
    file_count: int = 0
    url_count: int = 0


class ContextAssembler:
    def __init__(
        self,
        storage: Storage,
        mode_defaults: Dict[str, str],
        window: int = 10,
        max_urls: int = MAX_URLS_PER_REQUEST,
    ):
        self.storage = storage
        self.mode_defaults = mode_defaults
        self.window = max(1, window)
        self.max_urls = max_urls

    async def assemble(
        self,
        conversation: Conversation,
        requester_id: str,
        message: str,
        resource_ids: Sequence[str],
        model: str,
        temperature: float,
        max_output_tokens: int,
    ) -> AssembledContext:
        if not message or not message.strip():
            raise ValidationFailed("empty_message", "Message content is required")

        resources = await self.storage.load_resources_for_conversation(conversation.conversation_id)
        # file/URL gửi provider lấy từ TẤT CẢ resource của conversation
        files, urls = partition_resources(resources, self.max_urls)

        # window gồm cả message đang gửi (chưa persist) ở cuối
        prior = await self.storage.load_recent_messages(conversation.conversation_id, self.window - 1)
        pending = StoredMessage(
            message_id="pending",
            conversation_id=conversation.conversation_id,
            role="user",
            content=message,
        )
        history = normalize_history([*prior, pending])

        system_instruction = await resolve_system_instruction(
            conversation, requester_id, self.storage, self.mode_defaults
        )

        request = GenerationRequest(
            model=model,
            history=history,
            current_message=build_message_parts(message, files, urls),
            system_instruction=system_instruction,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            tools=select_tools(urls),
        )
        return AssembledContext(
            request=request,
            user_metadata=build_user_metadata(resources, resource_ids, urls),
            file_count=len(files),
            url_count=len(urls),
        )
