"""
Application configuration

SECURITY: Defaults are safe for local development only.
- REPOSITORY_BACKEND=memory and localhost databases are rejected in production
- Provider order is validated once at load time (unknown or duplicate names fail fast)
- Provider API keys have no defaults; LLM providers stay disabled without them
"""
import json
import logging
import os
from typing import List, Union

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bookstack.adapters.base import ProviderKind

logger = logging.getLogger(__name__)

# Cheapest and fastest first; paid LLM providers last
DEFAULT_PROVIDER_ORDER = [
    ProviderKind.OPEN_LIBRARY,
    ProviderKind.GOOGLE_BOOKS,
    ProviderKind.GEMINI,
    ProviderKind.CLAUDE,
    ProviderKind.OPENAI,
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # App
    APP_NAME: str = "Bookstack Intake"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./bookstack.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 3600  # 1 hour
    DB_AUTO_CREATE: bool = True  # create tables on startup (dev/test)

    # "sqlalchemy" or "memory"
    REPOSITORY_BACKEND: str = "sqlalchemy"

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def convert_database_url(cls, v):
        """Convert postgres:// URLs to asyncpg format."""
        if not v:
            return v
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql+asyncpg://", 1)
        elif v.startswith("postgresql://") and "+asyncpg" not in v:
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    @field_validator("REPOSITORY_BACKEND", "JOB_RUNNER", mode="before")
    @classmethod
    def normalize_choice(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    # Uploads
    UPLOAD_DIR: str = "uploads"
    MAX_BATCH_RECORDS: int = 1000
    MAX_UPLOAD_FILE_MB: int = 10
    MAX_IMAGES_PER_BATCH: int = 100

    # Batch processor
    BATCH_CHUNK_SIZE: int = 10
    BATCH_MAX_CONCURRENCY: int = 3

    # Shelf placement
    SHELF_DEFAULT_CAPACITY: int = 100
    OVERFLOW_SHELF_CAPACITY: int = 200
    SECTION_NUMBER_WIDTH: int = 2
    PLACEMENT_MAX_ATTEMPTS: int = 5

    # Enrichment chain - accepts JSON array or comma-separated string
    ENRICHMENT_PROVIDER_ORDER: Union[str, List[ProviderKind]] = DEFAULT_PROVIDER_ORDER
    ENRICHMENT_MAX_ATTEMPTS: int = 3
    ENRICHMENT_BACKOFF_BASE_SECONDS: float = 1.0
    ENRICHMENT_BACKOFF_MULTIPLIER: float = 2.0
    ENRICHMENT_TIMEOUT_SECONDS: float = 15.0
    ENRICHMENT_CACHE_TTL_SECONDS: int = 3600
    ENRICHMENT_CACHE_MAX_SIZE: int = 1000

    @field_validator("ENRICHMENT_PROVIDER_ORDER", mode="before")
    @classmethod
    def parse_provider_order(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return list(DEFAULT_PROVIDER_ORDER)
            if v.startswith("["):
                try:
                    v = json.loads(v)
                except json.JSONDecodeError:
                    raise ValueError(f"ENRICHMENT_PROVIDER_ORDER is not valid JSON: {v!r}")
            else:
                v = [name.strip() for name in v.split(",") if name.strip()]

        order = []
        for name in v:
            try:
                kind = ProviderKind(name.strip().lower() if isinstance(name, str) else name)
            except ValueError:
                known = ", ".join(k.value for k in ProviderKind)
                raise ValueError(f"Unknown enrichment provider {name!r} (known: {known})")
            if kind in order:
                raise ValueError(f"Enrichment provider {kind.value!r} listed more than once")
            order.append(kind)
        return order

    # Per-provider switches. LLM providers also need an API key.
    OPEN_LIBRARY_ENABLED: bool = True
    OPEN_LIBRARY_API_BASE: str = "https://openlibrary.org"
    GOOGLE_BOOKS_ENABLED: bool = True
    GOOGLE_BOOKS_API_BASE: str = "https://www.googleapis.com/books/v1"
    GOOGLE_BOOKS_API_KEY: str = ""

    GEMINI_ENABLED: bool = True
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-1.5-flash"
    CLAUDE_ENABLED: bool = True
    ANTHROPIC_API_KEY: str = ""
    CLAUDE_MODEL: str = "claude-3-haiku-20240307"
    OPENAI_ENABLED: bool = True
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"

    # Circuit breaker (one per provider)
    CIRCUIT_ERROR_RATE_THRESHOLD: float = 0.5
    CIRCUIT_MIN_CALLS: int = 5
    CIRCUIT_WINDOW_SECONDS: float = 10.0
    CIRCUIT_RESET_TIMEOUT_SECONDS: float = 30.0

    # Job runner: "inprocess" or "arq"
    JOB_RUNNER: str = "inprocess"
    ARQ_REDIS_URL: str = "redis://localhost:6379"
    ARQ_MAX_JOBS: int = 4
    ARQ_JOB_TIMEOUT_SECONDS: int = 3600

    @model_validator(mode="after")
    def validate_choices(self):
        if self.REPOSITORY_BACKEND not in ("sqlalchemy", "memory"):
            raise ValueError(f"REPOSITORY_BACKEND must be 'sqlalchemy' or 'memory', got {self.REPOSITORY_BACKEND!r}")
        if self.JOB_RUNNER not in ("inprocess", "arq"):
            raise ValueError(f"JOB_RUNNER must be 'inprocess' or 'arq', got {self.JOB_RUNNER!r}")
        if self.BATCH_CHUNK_SIZE < 1 or self.BATCH_MAX_CONCURRENCY < 1:
            raise ValueError("BATCH_CHUNK_SIZE and BATCH_MAX_CONCURRENCY must be positive")
        if self.ENRICHMENT_MAX_ATTEMPTS < 1:
            raise ValueError("ENRICHMENT_MAX_ATTEMPTS must be at least 1")
        return self

    @model_validator(mode="after")
    def validate_production_config(self):
        """Runtime validation to catch unsafe production configurations."""
        if self.ENVIRONMENT == "production":
            errors = []

            if self.DEBUG:
                errors.append(
                    "DEBUG=True is forbidden in production. "
                    "Set DEBUG=false or ENVIRONMENT=development"
                )

            if self.REPOSITORY_BACKEND == "memory":
                errors.append(
                    "REPOSITORY_BACKEND=memory loses all intake state on restart. "
                    "Use the sqlalchemy backend in production."
                )

            if "localhost" in self.DATABASE_URL or "127.0.0.1" in self.DATABASE_URL:
                errors.append(
                    "Localhost DATABASE_URL detected in production. "
                    "Configure proper database connection."
                )

            if errors:
                raise ValueError(
                    "PRODUCTION CONFIGURATION VIOLATIONS:\n" + "\n".join(f"  - {e}" for e in errors)
                )

        return self

    @property
    def max_upload_bytes(self) -> int:
        return self.MAX_UPLOAD_FILE_MB * 1024 * 1024

    def provider_enabled(self, kind: ProviderKind) -> bool:
        """A provider runs only when switched on and, for LLMs, given a key."""
        switches = {
            ProviderKind.OPEN_LIBRARY: (self.OPEN_LIBRARY_ENABLED, True),
            ProviderKind.GOOGLE_BOOKS: (self.GOOGLE_BOOKS_ENABLED, True),
            ProviderKind.GEMINI: (self.GEMINI_ENABLED, bool(self.GEMINI_API_KEY)),
            ProviderKind.CLAUDE: (self.CLAUDE_ENABLED, bool(self.ANTHROPIC_API_KEY)),
            ProviderKind.OPENAI: (self.OPENAI_ENABLED, bool(self.OPENAI_API_KEY)),
        }
        enabled, configured = switches[kind]
        return enabled and configured


# Try to load settings, provide helpful error on failure
try:
    settings = Settings()
except Exception:
    logger.exception(
        "Settings validation failed (ENVIRONMENT=%s). Check .env and environment variables.",
        os.getenv("ENVIRONMENT", "development"),
    )
    raise
