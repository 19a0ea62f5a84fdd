"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Scheduler configuration. All values come from environment variables."""

    # Database
    database_path: Path = Field(default=Path("data/scheduler.db"))

    # Scheduler loop
    scheduler_timezone: str = Field(default="Europe/Amsterdam")
    scheduler_tick_seconds: float = Field(default=1.0, gt=0)
    scheduler_batch_size: int = Field(default=50, ge=1)
    scheduler_max_penalty_multiplier: int = Field(default=64, ge=1)

    # Task execution
    scheduler_task_timeout_seconds: float = Field(default=120.0, gt=0)
    scheduler_lease_seconds: float = Field(default=300.0, gt=0)

    # Retry policy
    scheduler_max_attempts: int = Field(default=3, ge=1)
    scheduler_backoff_base_seconds: float = Field(default=5.0, gt=0)
    scheduler_backoff_cap_seconds: float = Field(default=300.0, gt=0)

    # Startup population
    scheduler_populate_on_start: bool = Field(default=True)
    scheduler_recurring_tasks: str = Field(default="")

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_recurring_tasks(self) -> dict[str, int]:
        """Parse SCHEDULER_RECURRING_TASKS (``Name:seconds,...``) into a mapping."""
        if not self.scheduler_recurring_tasks.strip():
            return {}
        tasks: dict[str, int] = {}
        for entry in self.scheduler_recurring_tasks.split(","):
            entry = entry.strip()
            if not entry:
                continue
            name, sep, interval = entry.partition(":")
            if not sep or not name.strip():
                msg = f"Invalid recurring task entry: {entry!r} (expected Name:seconds)"
                raise ValueError(msg)
            seconds = int(interval.strip())
            if seconds < 1:
                msg = f"Invalid recurring task interval: {entry!r} (must be >= 1 second)"
                raise ValueError(msg)
            tasks[name.strip()] = seconds
        return tasks


settings = Settings()
