from pydantic_settings import BaseSettings
from functools import lru_cache

APP_VERSION = "0.1.0"


class Settings(BaseSettings):
    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "chatdeck"
    postgres_user: str = "chatdeck"
    db_password: str = "changeme"

    # Anthropic
    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_model: str = "claude-3-5-sonnet-20241022"
    anthropic_max_tokens: int = 8192
    anthropic_temperature: float = 0.7
    anthropic_timeout: float = 120.0

    # System prompt
    system_prompt_cache_ttl: float = 300.0

    # Auth
    jwt_secret_key: str = "supersecretkey-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expire_days: int = 7

    # App
    log_level: str = "INFO"
    seed_admin_password: str = "chatdeck"
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    @property
    def database_url(self) -> str:
        return (
            f"postgresql://{self.postgres_user}:{self.db_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def anthropic_messages_url(self) -> str:
        return f"{self.anthropic_base_url.rstrip('/')}/v1/messages"

    class Config:
        env_file = ".env"
        extra = "ignore"


class ClientSettings(BaseSettings):
    """Settings for the session manager side, read from CHATDECK_* variables."""

    api_base_url: str = "http://localhost:8000"
    request_timeout: float = 120.0
    initial_messages_load: int = 20
    messages_per_page: int = 50

    class Config:
        env_prefix = "CHATDECK_"
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


@lru_cache()
def get_client_settings() -> ClientSettings:
    return ClientSettings()
