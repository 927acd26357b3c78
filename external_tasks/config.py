import uuid
from typing import Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from external_tasks.errors import ConfigurationError


def _random_worker_id() -> str:
    return f"worker-{uuid.uuid4()}"


class WorkerSettings(BaseSettings):
    # All durations are milliseconds, matching the engine REST contract.
    base_url: str
    worker_id: str = Field(default_factory=_random_worker_id, min_length=1)
    max_tasks: int = Field(default=10, gt=0)
    interval: int = Field(default=300, ge=0)
    lock_duration: int = Field(default=50000, gt=0)
    auto_poll: bool = True
    async_response_timeout: Optional[int] = Field(default=None, gt=0)
    use_priority: bool = True
    http_timeout: int = Field(default=10000, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="EXTERNAL_TASK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    @field_validator("base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value:
            raise ValueError("base_url must not be empty")
        return value

    @property
    def fetch_timeout(self) -> float:
        """Seconds to wait for one fetch-and-lock round-trip."""
        timeout_ms = self.http_timeout
        if self.async_response_timeout:
            timeout_ms += self.async_response_timeout
        return timeout_ms / 1000.0

    @classmethod
    def load(cls, **options) -> "WorkerSettings":
        """Builds settings from keyword options and the environment, failing loudly."""
        if "base_url" not in options and "path" in options:
            options["base_url"] = options.pop("path")
        try:
            return cls(**options)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
                for err in e.errors()
            )
            raise ConfigurationError(f"Invalid worker configuration: {problems}") from e
