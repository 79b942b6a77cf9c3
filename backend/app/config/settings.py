# /app/config/settings.py

import sys
import re
from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017/funnelchat"
    mongo_db_name: str = "funnelchat"
    max_pool_size: int = 10
    min_pool_size: int = 1

    # Storage: "memory" keeps sessions in-process, "mongo" persists sessions and reads flows from MongoDB
    session_backend: str = "memory"
    flows_seed_path: str | None = None

    # WhatsApp Cloud API
    whatsapp_access_token: str = ""
    whatsapp_phone_id: str = "000000000000"
    whatsapp_verify_token: str = "funnelchat-verify"
    whatsapp_app_secret: str = "funnelchat-app-secret"
    graph_api_base_url: str = "https://graph.facebook.com/v18.0"
    template_language: str = "es"

    # AI APIs
    gemini_api_key: str | None = None
    gemini_model: str = "models/gemini-1.5-flash"
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    ai_temperature: float = 0.7
    ai_max_tokens: int = 500
    ai_history_window: int = 10

    # Flow runtime
    max_steps_per_run: int = 50
    cas_retries: int = 3
    enforce_device_scope: bool = True
    default_agent_id: str | None = None
    timezone: str = "America/Mexico_City"
    wait_poll_seconds: int = 30
    address_lock_seconds: int = 30
    dedupe_ttl_seconds: int = 3600

    # Notifications
    admin_alert_phone: str | None = None
    email_api_url: str | None = None
    email_api_key: str | None = None
    email_from: str = "noreply@funnelchat.app"
    alerting_webhook_url: str | None = None

    # Deployment
    environment: str = Field(default="development")
    workers: int = 4
    redis_url: str = "redis://localhost:6379"

    cors_allowed_origins: List[str] = Field(default=["http://localhost:3000"])

    # App Metadata & Limits
    api_version: str = "v1"
    rate_limit_per_minute: int = 100
    address_rate_limit_per_minute: int = 20
    api_key: str | None = None
    log_level: str = "INFO"

    # ---------------- Validators ---------------- #

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def parse_cors_allowed_origins(cls, v):
        """Accept both comma-separated strings and lists."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("whatsapp_phone_id")
    @classmethod
    def phone_id_must_be_digits(cls, v):
        if not re.match(r"^\d+$", v):
            raise ValueError("WHATSAPP_PHONE_ID must contain only digits")
        return v

    @field_validator("session_backend")
    @classmethod
    def session_backend_must_be_known(cls, v):
        if v not in ("memory", "mongo"):
            raise ValueError("SESSION_BACKEND must be 'memory' or 'mongo'")
        return v

    @field_validator("max_steps_per_run", "cas_retries", "ai_history_window")
    @classmethod
    def must_be_positive(cls, v):
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production":
            for var in ["mongo_uri", "whatsapp_access_token", "whatsapp_verify_token", "whatsapp_app_secret"]:
                if not getattr(settings_obj, var):
                    raise ValueError(f"{var.upper()} is required in production")

            if not settings_obj.gemini_api_key and not settings_obj.openai_api_key:
                raise ValueError("At least one AI API key must be provided")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
