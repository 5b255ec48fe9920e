"""Runtime configuration loaded from the environment."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from studysphere.constants.network_constants import DEFAULT_HOST, DEFAULT_PORT
from studysphere.constants.quiz_constants import (
    AUTOSAVE_QUIET_SECONDS,
    ROLE_CACHE_TTL_SECONDS,
    TICK_INTERVAL_SECONDS,
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="STUDYSPHERE_", env_file=".env", env_ignore_empty=True, extra="ignore"
    )

    # "remote" talks to Supabase, "local" keeps everything in DATA_DIR.
    STORAGE_MODE: Literal["local", "remote"] = "local"
    DATA_DIR: Path = Path(".studysphere")

    SUPABASE_URL: Optional[str] = None
    SUPABASE_KEY: Optional[str] = None

    HOST: str = DEFAULT_HOST
    PORT: int = DEFAULT_PORT
    LOG_LEVEL: str = "INFO"

    ROLE_CACHE_TTL_SECONDS: int = ROLE_CACHE_TTL_SECONDS
    AUTOSAVE_QUIET_SECONDS: float = AUTOSAVE_QUIET_SECONDS
    TICK_INTERVAL_SECONDS: float = TICK_INTERVAL_SECONDS

    @property
    def uses_remote_backend(self) -> bool:
        return self.STORAGE_MODE == "remote"

    @property
    def local_store_path(self) -> Path:
        return self.DATA_DIR / "local_storage.json"
