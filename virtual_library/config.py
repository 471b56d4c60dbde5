import os

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .secrets import fetch_vault_secret

load_dotenv(".env")

# Vault keys that may override the environment.
VAULT_OVERRIDES = ("database_url", "jwt_secret", "stripe_secret_key", "openai_api_key", "smtp_password")


def _default_db_url() -> str:
    env_url = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_url:
        return env_url

    user = os.getenv("POSTGRES_USER", "postgres")
    password = os.getenv("POSTGRES_PASSWORD", "postgres")
    db_name = os.getenv("POSTGRES_DB", "library")
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    return f"postgresql+psycopg://{user}:{password}@{host}:{port}/{db_name}"


class Settings(BaseSettings):
    app_name: str = "Virtual Library API"
    version: str = "1.0.0"
    database_url: str = Field(default_factory=_default_db_url)

    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_ttl_seconds: int = 3600

    google_books_api_key: str | None = None
    google_books_url: str = "https://www.googleapis.com/books/v1"
    stripe_secret_key: str | None = None
    stripe_api_url: str = "https://api.stripe.com/v1"
    openai_api_key: str | None = None
    openai_api_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-3.5-turbo"
    http_timeout_seconds: float = 10.0

    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    mail_from: str | None = None

    loan_period_months: int = 1
    reminder_enabled: bool = False
    reminder_hour: int = Field(default=2, ge=0, le=23)
    reminder_timezone: str = "America/Montreal"
    reminder_window_days: int = 7
    recommend_rate_limit: int = 10

    cors_origins: str = ""
    require_https: bool = False
    strict_security: bool = False
    otel_enabled: bool = False
    vault_addr: str | None = None
    vault_token: str | None = None
    vault_kv_mount: str = "kv"
    vault_secret_path: str = "virtual-library/config"

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


def get_settings() -> Settings:
    settings = Settings()
    if settings.vault_addr and settings.vault_token:
        secret = fetch_vault_secret(
            addr=settings.vault_addr,
            token=settings.vault_token,
            mount=settings.vault_kv_mount,
            path=settings.vault_secret_path,
        )
        for key in VAULT_OVERRIDES:
            if secret.get(key):
                setattr(settings, key, secret[key])
    if settings.strict_security:
        insecure_markers = ("postgres:postgres@", "changeme", "change-me", "replace-me", "root@")
        if settings.database_url and any(marker in settings.database_url for marker in insecure_markers):
            raise RuntimeError("Insecure database credentials detected")
        if any(marker in settings.jwt_secret for marker in insecure_markers) or len(settings.jwt_secret) < 32:
            raise RuntimeError("Insecure JWT secret detected")
        if settings.vault_token and settings.vault_token.lower() == "root":
            raise RuntimeError("Insecure Vault token detected")
    return settings
