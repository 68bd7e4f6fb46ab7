from pydantic_settings import BaseSettings
from typing import List, Literal, Optional
from dotenv import load_dotenv
from slowapi import Limiter
from slowapi.util import get_remote_address

# Load .env file if it exists
load_dotenv()


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite+aiosqlite:///./moderation.db"

    # OpenAI (Moderation API + chat analyzer)
    openai_api_key: str = ""

    # Analyzer LLM provider
    analyzer_llm_provider: Literal["openai", "anthropic", "ollama"] = "openai"
    anthropic_api_key: str = ""
    ollama_base_url: str = "http://localhost:11434"

    # ── Moderation Settings ──
    default_moderation_model: str = "o4-mini"
    # Models served by the per-unit Moderation API; everything else goes to the analyzer
    classifier_models: List[str] = ["omni-moderation-latest", "text-moderation-latest"]
    provider_timeout_seconds: float = 60.0             # per provider call
    max_concurrent_requests: int = 8                   # parallel Moderation API calls per run
    strict_categories: bool = False                    # reject unknown category keys instead of dropping them

    # API Settings
    api_key: Optional[str] = None  # Set to enable API key auth; leave unset to disable
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    rate_limit_per_minute: int = 100
    rate_limit_storage_uri: str = "memory://"
    max_request_size_mb: int = 20  # manga chapters carry inline images

    # CORS Settings
    cors_origins: str = ""  # Comma-separated list of allowed origins, or "*" for all

    # Environment
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_sql: bool = False  # Whether to echo SQL queries (separate from environment)

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()

# Rate limiter shared by the API routers
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.rate_limit_storage_uri,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
)
