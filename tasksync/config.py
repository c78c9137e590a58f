from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_prefix="TASKSYNC_", env_file=".env", extra="ignore")

  store_backend: Literal["memory", "sql", "http"] = "memory"
  database_url: str = "sqlite+aiosqlite:///./tasksync.sqlite3"
  remote_base_url: str = "http://localhost:8000"
  remote_timeout_seconds: float = 15.0

  tasks_collection: str = "tasks"
  notifications_collection: str = "notifications"

  deadline_reminder_days: int = 3
  notify_actor: bool = True

  log_level: str = "INFO"


settings = Settings()
