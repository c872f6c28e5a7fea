# studentapi/config.py
"""
Student API configuration.

Values come from environment variables (STUDENTAPI_*), optionally seeded from a
local .env file, and are validated by a pydantic model so a bad deployment
fails at startup instead of on the first fault request.
"""

from __future__ import annotations

import os
import functools
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_PREFIX = "STUDENTAPI_"


class Settings(BaseModel):
    app_name: str = Field("student-api", description="Service name; used as the `application` metric label")
    database_url: str = Field("sqlite+aiosqlite:///./students.db", description="SQLAlchemy async URL")
    db_pool_size: int = Field(10, ge=1)
    db_max_overflow: int = Field(20, ge=0)
    db_pool_timeout: float = Field(30.0, gt=0)
    db_echo: bool = False

    api_prefix: str = "/api/v1"
    host: str = "0.0.0.0"
    port: int = Field(3000, ge=1, le=65535)
    log_level: str = "INFO"
    log_json: bool = False

    # fault harness knobs
    crash_grace_ms: int = Field(1000, ge=0, description="Delay between acknowledging `crash` and exiting")
    connection_probe_count: int = Field(60, ge=1, description="Default concurrent probes for high-db-connections")
    leak_pause_ms: int = Field(100, ge=0, description="Pause between memory-leak allocations")
    oom_chunk_bytes: int = Field(100_000_000, ge=1, description="Chunk size for the unbounded allocation loop")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """
        Build settings from STUDENTAPI_* variables. Unknown variables are ignored;
        missing ones keep their defaults.
        """
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        return cls(**values)


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_dotenv()  # loads .env if present
    return Settings.from_env()
