from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Every credential is required; a missing one fails startup.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Datastore
    DATABASE_PATH: str

    # Meta / WhatsApp
    META_VERIFY_TOKEN: str
    META_APP_SECRET: str
    META_ACCESS_TOKEN: str
    META_PHONE_NUMBER_ID: str
    META_API_BASE_URL: str = "https://graph.facebook.com"
    META_API_VERSION: str = "v18.0"

    # Model backend
    DEEPSEEK_API_KEY: str
    DEEPSEEK_API_URL: str = "https://api.deepseek.com/chat/completions"
    DEEPSEEK_MODEL: str = "deepseek-chat"

    # Slack escalation channel
    SLACK_WEBHOOK_URL: str
    SLACK_SIGNING_SECRET: str

    # Pipeline tuning
    LOG_LEVEL: str = "INFO"
    PROMPT_PATH: str = "templates/system_prompt.yaml"
    WORKER_POOL_SIZE: int = 8
    HISTORY_LIMIT: int = 20
    LLM_TIMEOUT_SECONDS: float = 35.0
    LLM_CLIENT_TIMEOUT_SECONDS: float = 30.0
    SEND_TIMEOUT_SECONDS: float = 10.0
    SCHEDULING_LINK: str = "https://bookings.clearoutspaces.ca/clearoutspaces/assessment"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every access.
    """
    return Settings()


# Global settings instance
settings = get_settings()
