"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    # Comma-separated list (e.g. http://localhost:3000,https://app.example.com). Empty = default list in code.
    cors_origins: str = ""

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str  # Required, no default
    celery_broker_url: str  # Required, no default
    celery_result_backend: str  # Required, no default

    # ===========================================
    # AUTH
    # ===========================================
    jwt_secret_key: str  # Required, no default
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60 * 24
    # Shared secret for the internal process trigger and cancel notification endpoints
    task_process_secret_key: str  # Required, no default

    # ===========================================
    # IMAGE GENERATION - PROVIDER CHAIN
    # ===========================================
    # Primary: OpenAI-compatible relay that returns image links in chat replies
    openai_api_key: str = ""
    openai_base_url: str = "https://api.tu-zi.com/v1"
    openai_model: str = "gpt-4o-all"
    # Secondary: official OpenAI endpoint
    official_openai_api_key: str = ""
    official_openai_base_url: str = "https://api.openai.com/v1"
    official_openai_model: str = "gpt-4o"
    prefer_primary_provider: bool = True

    # ===========================================
    # IMAGE GENERATION - COMMON SETTINGS
    # ===========================================
    # Kept below the platform request ceiling
    generation_request_timeout: float = 270.0
    # An error raised after this many seconds counts as a timeout regardless of its type
    generation_timeout_threshold_seconds: float = 240.0
    generation_max_tokens: int = 4000
    generation_stream: bool = False
    generation_fallback_model: str = "dall-e-3"
    generation_fallback_prompt_chars: int = 300
    generation_retry_backoff_seconds: float = 2.0
    generation_cost_credits: int = 1
    default_credits: int = 5
    history_max_entries: int = 100
    cancel_poll_interval_seconds: float = 3.0
    # One extraction retry per entry, waiting the given seconds before it
    extraction_retry_delays: str = "3,5"
    max_image_bytes: int = 8 * 1024 * 1024
    max_request_bytes: int = 12 * 1024 * 1024

    # ===========================================
    # TASK LIFECYCLE (watchdog / dispatcher)
    # ===========================================
    task_max_processing_minutes: int = 10
    pending_dispatch_max_attempts: int = 3
    pending_dispatch_window_minutes: int = 30
    pending_dispatch_batch_size: int = 10

    # ===========================================
    # IN-FLIGHT GUARD
    # ===========================================
    generation_lock_backend: str = "redis"  # redis, local
    generation_lock_key: str = "generation:inflight"
    # Renewed by the holder every ttl/3; bounds how long a crashed holder blocks the slot
    generation_lock_ttl_seconds: int = 60

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30
    cb_storage: str = "redis"  # redis, memory

    # ===========================================
    # LOGGING
    # ===========================================
    log_level: str = "INFO"
    request_id_header: str = "X-Request-Id"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator("generation_lock_backend", "cb_storage")
    @classmethod
    def normalize_backend(cls, v: str) -> str:
        return v.lower().strip()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        value = v.upper().strip()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"log_level must be a logging level name, got {v!r}")
        return value

    @property
    def extraction_retry_delays_list(self) -> list[float]:
        """Get extraction retry delays as floats."""
        return [float(d.strip()) for d in self.extraction_retry_delays.split(",") if d.strip()]

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
