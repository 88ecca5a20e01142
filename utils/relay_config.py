"""Runtime configuration for the realtime relay.

Values come from environment variables (a `.env` file is loaded by
`main.py`). `RelaySettings.from_env()` validates them once at startup so
the rest of the application can rely on typed attributes.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_REALTIME_URL = "wss://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview-2024-12-17"


class RelaySettings(BaseModel):
    """Tunable parameters for persistence, debounce and the upstream engine."""

    openai_api_key: str = Field(min_length=1)
    openai_realtime_url: str = DEFAULT_REALTIME_URL
    database_dir: Path
    conversations_dir: Optional[Path] = None
    condition: str = "C"
    voice: str = "alloy"
    log_level: str = "INFO"

    autosave_interval_seconds: float = Field(default=10.0, gt=0)
    save_debounce_seconds: float = Field(default=1.0, ge=0)
    save_max_attempts: int = Field(default=3, ge=1)
    save_retry_delay_seconds: float = Field(default=2.0, ge=0)
    session_eviction_delay_seconds: float = Field(default=30.0, ge=0)
    upstream_connect_timeout_seconds: float = Field(default=10.0, gt=0)
    close_save_timeout_seconds: float = Field(default=5.0, gt=0)

    @property
    def fallback_dir(self) -> Path:
        """Directory used for local transcript files when the database fails."""
        return self.conversations_dir or (self.database_dir / "conversations")

    @classmethod
    def from_env(cls) -> "RelaySettings":
        """Build settings from the process environment.

        Raises:
            RuntimeError: If OPENAI_API_KEY or DATABASE_DIR is missing.
        """
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY environment variable is not set")

        database_dir = os.getenv("DATABASE_DIR")
        if database_dir is None or not database_dir.strip():
            raise RuntimeError(
                "DATABASE_DIR environment variable must be set to a writable "
                "directory path where the SQLite database file will be stored."
            )

        values = {
            "openai_api_key": api_key,
            "database_dir": Path(database_dir).expanduser(),
        }
        optional = {
            "openai_realtime_url": "OPENAI_REALTIME_URL",
            "conversations_dir": "CONVERSATIONS_DIR",
            "condition": "STUDY_CONDITION",
            "voice": "VOICE",
            "log_level": "LOG_LEVEL",
            "autosave_interval_seconds": "AUTOSAVE_INTERVAL_SECONDS",
            "save_debounce_seconds": "SAVE_DEBOUNCE_SECONDS",
            "save_max_attempts": "SAVE_MAX_ATTEMPTS",
            "save_retry_delay_seconds": "SAVE_RETRY_DELAY_SECONDS",
            "session_eviction_delay_seconds": "SESSION_EVICTION_DELAY_SECONDS",
            "upstream_connect_timeout_seconds": "UPSTREAM_CONNECT_TIMEOUT_SECONDS",
        }
        for field_name, env_name in optional.items():
            raw = os.getenv(env_name)
            if raw is not None and raw.strip():
                values[field_name] = raw.strip()
        return cls(**values)
