# src/domain/schemas.py
from __future__ import annotations
from datetime import datetime, timezone
from typing import List, Optional, Literal, Dict, Any
from pydantic import BaseModel, Field, model_validator

StoredRole = Literal["system", "user", "assistant"]
TurnRole = Literal["user", "model"]
ChatMode = Literal["assistant", "custom_prompt", "url_context"]
UsageStatus = Literal["success", "error"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------- storage-facing records ----------

class StoredMessage(BaseModel):
    message_id: str
    conversation_id: str
    role: StoredRole
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class Resource(BaseModel):
    resource_id: str
    resource_type: Literal["file", "url"]
    name: Optional[str] = None
    # file: URI từ provider File API; url: chính URL
    url: Optional[str] = None
    file_path: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None


class Conversation(BaseModel):
    conversation_id: str
    user_id: str
    title: Optional[str] = None
    chat_mode: ChatMode = "assistant"
    system_prompt_id: Optional[str] = None


class SystemPrompt(BaseModel):
    system_prompt_id: str
    user_id: Optional[str] = None
    name: str
    prompt_text: str
    is_public: bool = False
    is_system: bool = False


class UsageCounts(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class UsageRecord(BaseModel):
    user_id: str
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    provider: str
    model_name: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_estimate: float = 0.0
    response_time_ms: Optional[int] = None
    status: UsageStatus = "success"
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


# ---------- provider request ----------

class FileData(BaseModel):
    file_uri: str
    mime_type: str


class Part(BaseModel):
    text: Optional[str] = None
    file_data: Optional[FileData] = None

    @model_validator(mode="after")
    def _one_kind(self) -> "Part":
        if (self.text is None) == (self.file_data is None):
            raise ValueError("part must carry exactly one of text / file_data")
        return self


class ConversationTurn(BaseModel):
    role: TurnRole
    parts: List[Part]


class ToolsConfig(BaseModel):
    url_context: bool = False
    web_search: bool = True

    @model_validator(mode="after")
    def _not_empty(self) -> "ToolsConfig":
        if not (self.url_context or self.web_search):
            raise ValueError("at least one tool must be enabled")
        return self


class GenerationRequest(BaseModel):
    model: str
    history: List[ConversationTurn] = Field(default_factory=list)
    current_message: ConversationTurn
    system_instruction: Optional[str] = None
    temperature: float = 0.7
    max_output_tokens: int = 2048
    tools: ToolsConfig = Field(default_factory=ToolsConfig)


# ---------- grounding ----------

class SourceChunk(BaseModel):
    index: int
    uri: Optional[str] = None
    title: Optional[str] = None


class GroundingSupport(BaseModel):
    # offset theo byte UTF-8 trong text gốc
    segment_end_byte: int
    chunk_indices: List[int] = Field(default_factory=list)


class GroundingMetadata(BaseModel):
    supports: List[GroundingSupport] = Field(default_factory=list)
    chunks: List[SourceChunk] = Field(default_factory=list)


# ---------- provider output ----------

class StreamChunk(BaseModel):
    text: str = ""
    is_final: bool = False
    grounding: Optional[GroundingMetadata] = None
    usage: Optional[UsageCounts] = None


class GenerationResult(BaseModel):
    text: str
    usage: UsageCounts = Field(default_factory=UsageCounts)
    grounding: Optional[GroundingMetadata] = None


# ---------- API ----------

class ChatInput(BaseModel):
    conversation_id: str = Field(min_length=1)
    message: str = Field(min_length=1)
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    # resource đính kèm riêng cho message này (chỉ dùng cho metadata)
    resource_ids: List[str] = Field(default_factory=list)


class ChatReply(BaseModel):
    assistant_message: StoredMessage
    usage: UsageCounts
    cost_estimate: float
    status: UsageStatus = "success"


# ---------- notifications ----------

class NotificationMeta(BaseModel):
    type: str
    correlation_id: str
    extra: Dict[str, Any] = Field(default_factory=dict)


class NotificationPayload(BaseModel):
    body: Dict[str, Any]
    meta: NotificationMeta


class FailedQueueEntry(BaseModel):
    payload: NotificationPayload
    failed_at: datetime = Field(default_factory=_utcnow)
    retries_exhausted: int


class SignupUser(BaseModel):
    id: str
    username: str
    email: str
    full_name: Optional[str] = None


class SSEEvent(BaseModel):
    event: str = "message"
    data: Dict[str, Any]
    id: Optional[str] = None
