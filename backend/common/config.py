from typing import List, Optional, Set
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Shared
    APP_ENV: str = "dev"
    APP_PORT: int = 8000
    APP_TIMEZONE: str = "America/Argentina/Buenos_Aires"
    APP_PUBLIC_URL: str = "https://gtdbuddy.app"
    DATABASE_URL: str
    REDIS_URL: str
    APP_AUTH_BEARER_TOKENS: str  # Comma-separated
    APP_AUTH_TOKEN_USER_MAP: Optional[str] = None  # token:user_id pairs, comma-separated

    # Messaging gateway (WhatsApp relay)
    GATEWAY_API_URL: Optional[str] = None
    GATEWAY_INSTANCE_NAME: Optional[str] = None
    GATEWAY_API_KEY: Optional[str] = None
    GATEWAY_TIMEOUT_SECONDS: int = 20
    GATEWAY_TEXT_MAX_LEN: int = 4000
    GATEWAY_SOURCE: str = "whatsapp"

    # Pipeline
    EVENT_MAX_AGE_SECONDS: int = 300
    # Must expire well inside EVENT_MAX_AGE_SECONDS so a crashed event is retried while still fresh.
    INFLIGHT_CLAIM_TTL_SECONDS: int = 120
    LINK_CODE_TTL_SECONDS: int = 900
    CONVERSATION_HISTORY_LIMIT: int = 5
    CONVERSATION_PROMPT_TURNS: int = 3
    CONVERSATION_TTL_MINUTES: int = 60
    ENTITLED_SUBSCRIPTION_STATES: str = "active,trial,test"
    ENTITLED_ROLES: str = "test"
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_MESSAGES_PER_WINDOW: int = 20

    # Language model provider
    LLM_PROVIDER: str = "openai"
    LLM_API_KEY: str
    LLM_API_BASE_URL: str = "https://api.openai.com/v1"
    LLM_TIMEOUT_SECONDS: int = 30
    LLM_MAX_RETRIES: int = 2
    LLM_RETRY_BACKOFF_SECONDS: float = 1.0
    LLM_TEMPERATURE: float = 0.3
    LLM_MODEL_CLASSIFY: str = "gpt-4o"
    PROMPT_VERSION_CLASSIFY: str = "v1"

    # Speech-to-text provider
    STT_API_BASE_URL: str = "https://api.openai.com/v1"
    STT_API_KEY: Optional[str] = None
    STT_MODEL: str = "whisper-1"
    STT_LANGUAGE: str = "es"
    STT_TIMEOUT_SECONDS: int = 60
    MEDIA_DOWNLOAD_TIMEOUT_SECONDS: int = 20

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def auth_tokens(self) -> List[str]:
        return [t.strip() for t in self.APP_AUTH_BEARER_TOKENS.split(",") if t.strip()]

    @property
    def token_user_map(self) -> dict:
        if not self.APP_AUTH_TOKEN_USER_MAP:
            return {}
        mapping = {}
        for pair in self.APP_AUTH_TOKEN_USER_MAP.split(","):
            pair = pair.strip()
            if not pair or ":" not in pair:
                continue
            token, user_id = pair.split(":", 1)
            token = token.strip()
            user_id = user_id.strip()
            if token and user_id:
                mapping[token] = user_id
        return mapping

    @property
    def entitled_states(self) -> Set[str]:
        return {s.strip().lower() for s in self.ENTITLED_SUBSCRIPTION_STATES.split(",") if s.strip()}

    @property
    def entitled_roles(self) -> Set[str]:
        return {r.strip().lower() for r in self.ENTITLED_ROLES.split(",") if r.strip()}

    @property
    def stt_api_key(self) -> str:
        # Whisper-compatible endpoints usually share the chat-completions key.
        return self.STT_API_KEY or self.LLM_API_KEY

settings = Settings()
