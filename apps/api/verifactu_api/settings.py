"""Application settings and configuration."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: Optional[str] = None
    postgres_user: str = "verifactu"
    postgres_password: str = "verifactu_dev_password"
    postgres_db: str = "verifactu"
    postgres_port: int = 5432

    # Redis (Celery broker)
    redis_url: str = "redis://localhost:6379/0"

    # API
    api_port: int = 8000
    secret_key: str = "dev-secret-key-change-in-production"
    environment: str = "development"
    api_host: str = "0.0.0.0"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # Certificate container / password encryption
    certificate_encryption_provider: str = "local"  # local, aws_kms
    certificate_encryption_key_id: Optional[str] = None  # KMS key ID
    local_encryption_salt: Optional[str] = None

    # AWS (for KMS)
    aws_region: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None

    # AEAT endpoints
    aeat_live_production_url: str = (
        "https://www1.agenciatributaria.gob.es/wlpl/TIKE-CONT/ws/SistemaFacturacion/VerifactuSOAP"
    )
    aeat_live_testing_url: str = (
        "https://prewww1.aeat.es/wlpl/TIKE-CONT/ws/SistemaFacturacion/VerifactuSOAP"
    )
    aeat_requirement_production_url: str = (
        "https://www1.agenciatributaria.gob.es/wlpl/TIKE-CONT/ws/SistemaFacturacion/RequerimientoSOAP"
    )
    aeat_requirement_testing_url: str = (
        "https://prewww1.aeat.es/wlpl/TIKE-CONT/ws/SistemaFacturacion/RequerimientoSOAP"
    )
    aeat_timeout_seconds: float = 30.0
    aeat_client_cert_path: Optional[str] = None  # PEM client certificate for transport authentication
    aeat_client_key_path: Optional[str] = None
    aeat_qr_base_url: str = "https://www2.agenciatributaria.gob.es/es13/h/qr"
    aeat_min_flow_control_seconds: int = 60  # Authority minimum in production

    # Submission worker
    worker_tick_seconds: int = 30
    certificate_check_hour_utc: int = 6  # Daily certificate monitor run
    worker_max_concurrent_tenants: int = 4
    sending_stale_seconds: int = 600
    sequence_conflict_retries: int = 3

    # Backoff after transient failures
    backoff_base_seconds: int = 60
    backoff_factor: float = 2.0
    backoff_cap_seconds: int = 3600
    max_auto_retries: int = 3  # Transient failures before an operator retry is required

    # Certificate monitor
    certificate_warning_days: int = 30
    certificate_urgent_days: int = 7
    certificate_notification_dedupe_hours: int = 24

    # Notifications to the CRM
    notifier_url: Optional[str] = None
    notifier_secret: Optional[str] = None
    notifier_timeout_seconds: int = 10

    # CORS
    cors_origins: list[str] = ["*"]
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = ["*"]
    cors_allow_headers: list[str] = ["*"]

    @property
    def database_url_computed(self) -> str:
        """Compute database URL if not explicitly set."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@localhost:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def is_local(self) -> bool:
        """Development and test environments, where local-only providers are allowed."""
        return self.environment.lower() in ("development", "test", "dev")

    def validate_production_settings(self):
        """Validate settings for production environment."""
        if not self.is_local:
            if self.certificate_encryption_provider == "local":
                raise ValueError(
                    "CERTIFICATE_ENCRYPTION_PROVIDER=local is not allowed in production. "
                    "Use CERTIFICATE_ENCRYPTION_PROVIDER=aws_kms."
                )
            if self.secret_key == "dev-secret-key-change-in-production":
                raise ValueError("SECRET_KEY must be set in production.")
            if self.notifier_url and not self.notifier_secret:
                raise ValueError("NOTIFIER_SECRET is required when NOTIFIER_URL is set.")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
