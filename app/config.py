from __future__ import annotations

import os

from pydantic import BaseModel, Field

from shared.contracts.enums import Platform


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Runtime configuration, read from the environment."""

    platform: Platform = Platform.ANDROID
    timezone: str = "UTC"
    missed_dose_threshold: int = Field(default=2, ge=1)
    modal_timeout_seconds: float = Field(default=120.0, gt=0)

    email_service_url: str = "http://localhost:3001"
    email_timeout_seconds: float = Field(default=10.0, gt=0)
    email_provider: str = Field(default="sendgrid", pattern="^(sendgrid|mailjet)$")
    sendgrid_api_key: str | None = None
    mailjet_api_key_public: str | None = None
    mailjet_api_key_private: str | None = None
    email_sender: str = "noreply@rxmanagement.app"
    email_sender_name: str = "RxManagement"

    database_url: str | None = None

    openai_api_key: str | None = None
    openai_model: str = "gpt-4o"
    assistant_max_history: int = Field(default=20, ge=1)

    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        values: dict[str, object] = {
            "platform": os.getenv("MEDREMINDER_PLATFORM"),
            "timezone": os.getenv("MEDREMINDER_TIMEZONE"),
            "missed_dose_threshold": os.getenv("MISSED_DOSE_THRESHOLD"),
            "modal_timeout_seconds": os.getenv("MODAL_TIMEOUT_SECONDS"),
            "email_service_url": os.getenv("EMAIL_SERVICE_URL"),
            "email_timeout_seconds": os.getenv("EMAIL_TIMEOUT_SECONDS"),
            "email_provider": os.getenv("EMAIL_PROVIDER"),
            "sendgrid_api_key": os.getenv("SEND_GRID_KEY"),
            "mailjet_api_key_public": os.getenv("MJ_APIKEY_PUBLIC"),
            "mailjet_api_key_private": os.getenv("MJ_APIKEY_PRIVATE"),
            "email_sender": os.getenv("EMAIL_SENDER"),
            "email_sender_name": os.getenv("EMAIL_SENDER_NAME"),
            "database_url": os.getenv("DATABASE_URL"),
            "openai_api_key": os.getenv("OPENAI_API_KEY"),
            "openai_model": os.getenv("OPENAI_MODEL"),
            "log_level": os.getenv("LOG_LEVEL"),
            "log_json": _env_bool("LOG_JSON", False),
        }
        return cls.model_validate({key: value for key, value in values.items() if value is not None})


def load_settings() -> Settings:
    return Settings.from_env()
