from __future__ import annotations
from typing import Optional, Literal, List, Dict
from pydantic import Field, AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict

from prompt.defaults import DEFAULT_SYSTEM_PROMPT, URL_CONTEXT_SYSTEM_PROMPT


class Settings(BaseSettings):
    # env
    ENV: Literal["dev", "staging", "prod"] = "dev"

    # api
    API_V1_STR: str = "v1"
    APP_NAME: str = "groundchat"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ALLOW_ORIGINS: List[str] = Field(default_factory=list)

    MAX_REQUEST_SIZE_BYTES: int = 256 * 1024

    # auth / rbac
    AUTH_MODE: Literal["none", "api_key"] = "none"
    API_KEYS: List[str] = Field(default_factory=list)
    # key nằm trong ADMIN_KEYS sẽ có role admin (xem failed-queue, ...)
    ADMIN_KEYS: List[str] = Field(default_factory=list)
    DEFAULT_ROLE: Literal["user", "admin"] = "user"

    # llm
    LLM_PROVIDER: Literal["gemini", "openai"] = "gemini"
    LLM_MODEL: str = "gemini-2.5-flash"
    GOOGLE_API_KEY: Optional[str] = Field(default=None)
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    OPENAI_BASE_URL: Optional[AnyHttpUrl] = Field(default="https://api.openai.com/v1")

    # LLM cost & behaviour tuning
    LLM_MAX_TOKENS: int = 2048
    LLM_TEMPERATURE: float = 0.7

    # Gemini: -1 = dynamic thinking, None = không gửi thinking_config
    GEMINI_THINKING_BUDGET: Optional[int] = -1
    GEMINI_SAFETY_THRESHOLD: str = "BLOCK_MEDIUM_AND_ABOVE"

    # Circuit breaker cho LLM
    LLM_CB_ENABLED: bool = True
    LLM_CB_FAIL_THRESHOLD: int = 5
    LLM_CB_OPEN_SEC: int = 30

    # timeouts & retries
    # Timeout tổng cho một lần generate / một stream (giây). <=0 nghĩa là không giới hạn.
    LLM_REQUEST_TIMEOUT_SEC: float = 120.0
    LLM_MAX_RETRIES: int = 2
    LLM_RETRY_BASE_DELAY_SEC: float = 0.6

    # chat / context
    CONTEXT_WINDOW_MESSAGES: int = 10
    MAX_URLS_PER_REQUEST: int = 20
    DEFAULT_SYSTEM_PROMPT: str = DEFAULT_SYSTEM_PROMPT
    URL_CONTEXT_SYSTEM_PROMPT: str = URL_CONTEXT_SYSTEM_PROMPT
    CITATION_SOURCES_HEADER: str = "**Nguồn tham khảo (Sources):**"

    # Bảng giá USD / 1K token, key = model name
    MODEL_PRICING: Dict[str, Dict[str, float]] = Field(
        default_factory=lambda: {
            "gemini-2.5-flash": {"input": 0.000075, "output": 0.0003},
            "gemini-1.5-pro": {"input": 0.00025, "output": 0.00125},
            "gemini-1.5-flash": {"input": 0.000075, "output": 0.0003},
        }
    )
    DEFAULT_PRICING_MODEL: str = "gemini-2.5-flash"

    # storage
    STORAGE_BACKEND: Literal["memory", "redis"] = "memory"
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    REDIS_SOCKET_TIMEOUT_SEC: float = 2.0
    REDIS_CONNECT_TIMEOUT_SEC: float = 2.0
    REDIS_HEALTH_CHECK_INTERVAL_SEC: int = 30
    REDIS_RETRY_ON_TIMEOUT: bool = True

    # SSE
    SSE_HEARTBEAT_SEC: int = 15
    SSE_RETRY_MS: int = 0
    # semaphore giới hạn số stream song song (SSE + WebSocket)
    MAX_CONCURRENT_STREAMS: int = 100

    # readiness
    READY_CHECK_CACHE_SEC: int = 20

    # notifications (webhook MS Teams)
    WEBHOOK_URL: Optional[str] = Field(default=None)
    FRONTEND_URL: str = "http://localhost:5500"
    NOTIFY_RETRY_DELAY_SEC: float = 300.0
    NOTIFY_MAX_RETRIES: int = 2
    NOTIFY_TIMEOUT_SEC: float = 10.0
    NOTIFY_TIMEZONE: str = "Asia/Ho_Chi_Minh"
    FAILED_QUEUE_PATH: str = "./data/failed-notifications.json"
    NOTIFY_LOG_FILE: Optional[str] = "./logs/notifications.log"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, frozen=True)


SETTINGS = Settings()
