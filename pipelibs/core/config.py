"""
Application settings (pydantic-settings).

Values come from environment variables or a ``.env`` file in the working
directory. Everything has a default so the library runtime works without any
configuration (sqlite store, no Redis, cache under ``.pipelibs/``).
"""

from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "pipelibs"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    API_V1_STR: str = "/api/v1"

    DATABASE_URL: str = "sqlite:///./.pipelibs/pipelibs.db"

    CACHE_ENABLED: bool = False
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None

    # Default-version -> revision id lookups; short so new pushes are picked up.
    DEFAULT_REVISION_CACHE_TTL_SECONDS: int = 30

    LIBRARY_CACHE_DIR: str = ".pipelibs/cache"
    LIBRARY_CACHE_MAX_ENTRIES: int = 64

    TRANSPORT_RETRY_ATTEMPTS: int = 3
    TRANSPORT_RETRY_BACKOFF_SECONDS: float = 0.5
    GIT_EXECUTABLE: str = "git"
    GIT_TIMEOUT_SECONDS: int = 120

    SCRIPT_EXEC_TIMEOUT: int | None = None
    # Comma-separated privileged steps that sandboxed scripts may still call.
    SCRIPT_APPROVED_STEPS: str = ""
    # Comma-separated env keys readable through env.get() from sandboxed code.
    SCRIPT_ENV_WHITELIST: str = "BUILD_NUMBER,JOB_NAME,BRANCH_NAME"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def redis_url(self) -> str:
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def approved_steps(self) -> frozenset[str]:
        raw = (self.SCRIPT_APPROVED_STEPS or "").strip()
        return frozenset(s.strip() for s in raw.split(",") if s.strip())

    @property
    def env_whitelist(self) -> frozenset[str]:
        raw = (self.SCRIPT_ENV_WHITELIST or "").strip()
        return frozenset(s.strip() for s in raw.split(",") if s.strip())


settings = Settings()  # type: ignore
