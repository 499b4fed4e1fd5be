"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    public_base_url: str = Field(default="", alias="PUBLIC_BASE_URL")

    # Credits
    default_credit_balance: int = Field(default=2, ge=0, alias="DEFAULT_CREDIT_BALANCE")

    # Photo intake
    max_photo_bytes: int = Field(default=10 * 1024 * 1024, alias="MAX_PHOTO_BYTES")

    # 3D generation provider: "replicate" (Trellis, webhook capable) or "hunyuan3d" (polling)
    generation_provider: str = Field(default="replicate", alias="GENERATION_PROVIDER")
    replicate_api_token: str = Field(default="", alias="REPLICATE_API_TOKEN")
    replicate_model_version: str = Field(
        default="e8f6c45206993f297372f5436b90350817bd9b4a0d52d2a76df50c1c8afa2b3c",
        alias="REPLICATE_MODEL_VERSION",
    )
    replicate_webhook_secret: str = Field(default="", alias="REPLICATE_WEBHOOK_SECRET")
    hunyuan3d_api_url: str = Field(
        default="https://asimfayaz-hunyuan3d-2-1.hf.space", alias="HUNYUAN3D_API_URL"
    )
    hunyuan3d_api_key: str = Field(default="", alias="HUNYUAN3D_API_KEY")

    # Cloudflare R2 object storage
    r2_account_id: str = Field(default="", alias="R2_ACCOUNT_ID")
    r2_access_key_id: str = Field(default="", alias="R2_ACCESS_KEY_ID")
    r2_secret_access_key: str = Field(default="", alias="R2_SECRET_ACCESS_KEY")
    r2_photos_bucket: str = Field(default="photos", alias="R2_PHOTOS_BUCKET")
    r2_models_bucket: str = Field(default="models-glb", alias="R2_MODELS_BUCKET")
    r2_public_photos_url: str = Field(default="", alias="R2_PUBLIC_PHOTOS_URL")
    r2_public_models_url: str = Field(default="", alias="R2_PUBLIC_MODELS_URL")
    artifact_download_timeout_seconds: float = Field(
        default=60.0, alias="ARTIFACT_DOWNLOAD_TIMEOUT_SECONDS"
    )

    # Reconciliation
    poll_interval_seconds: int = Field(default=5, alias="POLL_INTERVAL_SECONDS")
    worker_batch_size: int = Field(default=10, alias="WORKER_BATCH_SIZE")
    status_check_max_attempts: int = Field(default=5, ge=1, alias="STATUS_CHECK_MAX_ATTEMPTS")
    status_check_base_delay_seconds: float = Field(
        default=2.0, alias="STATUS_CHECK_BASE_DELAY_SECONDS"
    )
    status_check_max_delay_seconds: float = Field(
        default=30.0, alias="STATUS_CHECK_MAX_DELAY_SECONDS"
    )
    job_timeout_seconds: int = Field(default=3600, alias="JOB_TIMEOUT_SECONDS")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if the selected provider or the
        object store is not configured. Skipped in test environments.
        """
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if self.generation_provider not in ("replicate", "hunyuan3d"):
            missing.append(
                f"GENERATION_PROVIDER: unknown provider '{self.generation_provider}' "
                "(expected 'replicate' or 'hunyuan3d')"
            )

        if self.generation_provider == "replicate":
            if not self.replicate_api_token:
                missing.append(
                    "REPLICATE_API_TOKEN: Get your API token from "
                    "https://replicate.com/account/api-tokens"
                )
            if self.public_base_url and not self.replicate_webhook_secret:
                missing.append(
                    "REPLICATE_WEBHOOK_SECRET: required when PUBLIC_BASE_URL enables webhooks"
                )

        for name, value in (
            ("R2_ACCOUNT_ID", self.r2_account_id),
            ("R2_ACCESS_KEY_ID", self.r2_access_key_id),
            ("R2_SECRET_ACCESS_KEY", self.r2_secret_access_key),
            ("R2_PUBLIC_PHOTOS_URL", self.r2_public_photos_url),
            ("R2_PUBLIC_MODELS_URL", self.r2_public_models_url),
        ):
            if not value:
                missing.append(f"{name}: Cloudflare R2 storage is not configured")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    min_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.app_env == "production":
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
