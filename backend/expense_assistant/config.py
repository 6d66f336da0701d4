from functools import lru_cache
import json
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator

from .domain.categories import SUPPORTED_CURRENCIES

_ENV_CANDIDATES = (
    Path(__file__).resolve().parent.parent.parent / ".env",
    Path(__file__).resolve().parent.parent / ".env",
    Path.cwd() / ".env",
)

for env_path in _ENV_CANDIDATES:
    if env_path.is_file():
        load_dotenv(env_path, override=False)
        break


class Settings(BaseSettings):
    """Application configuration sourced from environment variables."""

    database_url: str = "sqlite:///./expenses.db"
    api_prefix: str = "/api"
    allow_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://localhost:8000",
        ]
    )
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 30

    telegram_bot_token: str | None = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    telegram_polling_in_api: bool = True
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    text_model: str = "gpt-4o-mini"
    vision_model: str = "gpt-4o"
    transcription_model: str = "whisper-1"
    transcription_language: str = "es"
    ai_timeout_seconds: float = 30.0

    default_currency: str = "PEN"
    merchant_max_length: int = 50
    pending_duplicate_ttl_seconds: int = 5 * 60
    inbound_dedup_ttl_seconds: int = 5 * 60
    link_code_ttl_minutes: int = 10

    bank_keyword: str = "interbank"
    email_alias: str = "gastos"
    email_domain: str = "example.com"
    dashboard_url: str = "http://localhost:3000"

    whatsapp_token: str | None = Field(default=None, alias="WHATSAPP_TOKEN")
    whatsapp_phone_number_id: str | None = Field(default=None, alias="WHATSAPP_PHONE_NUMBER_ID")
    whatsapp_verify_token: str | None = Field(default=None, alias="WHATSAPP_VERIFY_TOKEN")
    whatsapp_api_url: str = "https://graph.facebook.com/v18.0"

    model_config = SettingsConfigDict(env_file=None, populate_by_name=True, extra="ignore")

    @field_validator("allow_origins", mode="before")
    @classmethod
    def parse_allow_origins(cls, value: object) -> list[str]:
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                try:
                    return json.loads(stripped)
                except json.JSONDecodeError:
                    pass
            return [item.strip() for item in stripped.split(",") if item.strip()]
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise ValueError("Invalid allow_origins format.")

    @field_validator("default_currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        code = value.strip().upper()
        if code not in SUPPORTED_CURRENCIES:
            raise ValueError(f"default_currency must be one of {', '.join(SUPPORTED_CURRENCIES)}.")
        return code

    @model_validator(mode="after")
    def populate_from_env(self) -> "Settings":
        if not self.telegram_bot_token:
            self.telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN") or os.getenv("TELEGRAM_BOT")
        if not self.openai_api_key:
            self.openai_api_key = os.getenv("OPENAI_API_KEY")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return cached settings to avoid repeated environment parsing."""
    return Settings()
