from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

from signflow.core.errors import MisconfiguredError


class Settings(BaseSettings):
    """
    Global Signflow settings.
    Values are read from the environment and from the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Project
    project_name: str = "Signflow API"
    debug: bool = False

    # Executed-file access tokens (JWT, keyed from the document signing secret)
    executed_link_ttl_minutes: int = 60 * 24 * 7

    # Signing links: HMAC key for token hashes. No default on purpose.
    document_signing_secret: Optional[str] = None

    # Database
    database_url: str = "sqlite:///./dev.db"

    # Storage: "s3" (durable object storage) or "local"
    files_storage: str = "s3"
    esign_require_object_storage: bool = True
    storage_base_path: str = "_storage"
    s3_endpoint_url: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_region: str = "auto"
    s3_bucket_files: str = "project-files"
    s3_files_prefix: str = "project-files"

    # CORS
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # E-mail
    email_backend: str = "smtp"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: Optional[str] = None
    smtp_starttls: bool = True
    sendgrid_api_key: Optional[str] = None
    notification_max_workers: int = 8

    # Public URLs (links sent by e-mail)
    public_base_url: str = "http://localhost:8000"
    public_app_url: str = "http://localhost:3000"

    # Envelope execution
    execution_claim_timeout_seconds: int = 900

    def resolved_public_app_url(self) -> str:
        """Base URL used for signing links and executed-document links."""
        base = (self.public_app_url or "").strip()
        if base:
            return base.rstrip("/")
        return (self.public_base_url or "").rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Returns the cached settings instance."""
    return Settings()


settings = get_settings()


@dataclass(frozen=True)
class SigningConfig:
    """Configuration the signing workflow is constructed with."""

    signing_secret: str
    public_app_url: str
    require_object_storage: bool = True
    executed_link_ttl_minutes: int = 60 * 24 * 7
    execution_claim_timeout_seconds: int = 900
    notification_max_workers: int = 8

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "SigningConfig":
        source = source or settings
        secret = (source.document_signing_secret or "").strip()
        if not secret:
            raise MisconfiguredError("Missing DOCUMENT_SIGNING_SECRET environment variable")
        return cls(
            signing_secret=secret,
            public_app_url=source.resolved_public_app_url(),
            require_object_storage=source.esign_require_object_storage,
            executed_link_ttl_minutes=max(int(source.executed_link_ttl_minutes), 1),
            execution_claim_timeout_seconds=max(int(source.execution_claim_timeout_seconds), 1),
            notification_max_workers=max(int(source.notification_max_workers), 1),
        )
