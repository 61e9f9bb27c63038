from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

load_dotenv()


class Settings(BaseModel):
    CACHE_DB_PATH: str = Field(default="devicehooks.db")
    STORE_BACKEND: str = Field(default="sqlite", description="sqlite, memory or firestore")
    STORE_MAX_RETRIES: int = Field(default=25)
    AUTH_BACKEND: str = Field(default="static", description="static or firebase")
    API_TOKENS: str = Field(default="", description="comma-separated token=uid pairs")
    ADMIN_UIDS: str = Field(default="", description="comma-separated admin uids")
    FIREBASE_CREDENTIALS: Optional[str] = Field(default=None)
    RELAY_SECRET: str = Field(default="")  # empty disables the forward token check
    RELAY_TIMEOUT_SECONDS: float = Field(default=5.0)
    LOG_LEVEL: str = Field(default="INFO")
    CORS_ALLOW_ORIGINS: str = Field(default="*")
    RATE_LIMIT_ENABLED: bool = Field(default=False)
    RATE_LIMIT_RPS: float = Field(default=5.0)
    RATE_LIMIT_BURST: int = Field(default=20)

    @property
    def admin_uid_set(self) -> set[str]:
        return {uid.strip() for uid in self.ADMIN_UIDS.split(",") if uid.strip()}

    @property
    def api_token_map(self) -> dict[str, str]:
        tokens: dict[str, str] = {}
        for pair in self.API_TOKENS.split(","):
            token, sep, uid = pair.partition("=")
            if sep and token.strip() and uid.strip():
                tokens[token.strip()] = uid.strip()
        return tokens


def _load_settings(existing: Settings | None = None) -> Settings:
    values: dict[str, Any] = {}
    for name, field in Settings.model_fields.items():
        env_value = os.getenv(name)
        if env_value is None:
            if existing is not None and hasattr(existing, name):
                values[name] = getattr(existing, name)
                continue
            if field.is_required():
                continue
            values[name] = field.get_default(call_default_factory=True)
        else:
            values[name] = env_value

    try:
        return Settings(**values)
    except ValidationError as exc:
        invalid = sorted({str(error["loc"][0]) for error in exc.errors() if error.get("loc")})
        if invalid:
            raise RuntimeError(
                f"Invalid environment variables: {', '.join(invalid)}"
            ) from exc
        raise


settings = _load_settings()


def reload_settings() -> Settings:
    global settings
    fresh = _load_settings(settings)
    settings.__dict__.update(fresh.__dict__)
    return settings
