from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_project_root = Path(__file__).resolve().parents[1]
load_dotenv(_project_root / ".env", override=False)


class Settings(BaseSettings):
    PORTAINER_URL: AnyHttpUrl
    PORTAINER_API_KEY: str
    PORTAINER_ENDPOINT_ID: int
    PORTAINER_REQUEST_TIMEOUT_SECONDS: float = 30.0

    STACKPULSE_DB_URL: str = "sqlite:///./stackpulse.db"

    STACKS_CACHE_TTL_SECONDS: float = 30.0
    STALENESS_PROBE_CONCURRENCY: int = 8
    # Stacks that must never be redeployed from here, e.g. the one running StackPulse.
    REDEPLOY_DISABLED_STACKS: str = ""

    EVENT_STREAM_HEARTBEAT_SECONDS: float = 15.0
    EVENT_SUBSCRIBER_QUEUE_SIZE: int = 256

    @field_validator("PORTAINER_API_KEY")
    @classmethod
    def validate_api_key(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("PORTAINER_API_KEY must not be empty")
        return value

    @field_validator("REDEPLOY_DISABLED_STACKS")
    @classmethod
    def validate_disabled_stacks(cls, value: str) -> str:
        names = [name.strip() for name in value.split(",") if name.strip()]
        return ",".join(names)

    @field_validator(
        "STACKS_CACHE_TTL_SECONDS",
        "STALENESS_PROBE_CONCURRENCY",
        "EVENT_STREAM_HEARTBEAT_SECONDS",
        "EVENT_SUBSCRIBER_QUEUE_SIZE",
    )
    @classmethod
    def validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @property
    def portainer_base_url(self) -> str:
        return str(self.PORTAINER_URL).rstrip("/")

    @property
    def redeploy_disabled_names(self) -> frozenset[str]:
        return frozenset(name for name in self.REDEPLOY_DISABLED_STACKS.split(",") if name)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
