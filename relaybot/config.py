import os
import tempfile
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./relaybot.db"
    debug: bool = False
    log_level: str = "INFO"

    green_api_webhook_token: Optional[str] = None
    green_api_url: str = "https://api.green-api.com"
    green_api_id_instance: Optional[str] = None
    green_api_token_instance: Optional[str] = None
    green_api_timeout_seconds: float = 30.0

    public_base_url: str = "http://localhost:8000"
    temp_dir: str = os.path.join(tempfile.gettempdir(), "relaybot")

    dedup_max_size: int = 1000
    dedup_clear_interval_seconds: float = 1800.0

    agent_max_iterations: int = 5
    agent_loop_enabled: Optional[str] = None
    intent_router_use_llm: Optional[str] = None
    history_limit: int = 20

    openai_api_key: Optional[str] = None
    openai_chat_model: str = "gpt-4o-mini"
    openai_image_model: str = "gpt-image-1"

    alert_bot_token: Optional[str] = None
    alert_chat_id: Optional[str] = None

    cors_allow_origins: str = "*"

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}
