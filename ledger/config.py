from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ledger.constants import (
    DEFAULT_PAGE_SIZE,
    IDEMPOTENCY_TTL_HOURS,
    MAX_CONCURRENT_FEEDS,
    MAX_PAGE_SIZE,
    PRESIGNED_URL_EXPIRY_SECONDS,
    USER_AGENT,
)

LEDGER_DIR = Path.home() / ".ledger"


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
    )

    data_dir: Path = LEDGER_DIR

    # YAML with a top-level "feeds" list; the packaged default is used when unset
    feeds_path: Path | None = None

    # Blob storage for raw snapshots
    blob_backend: Literal["local", "s3"] = "local"
    snapshot_bucket: str = "ledger-snapshots"
    aws_region: str | None = Field(default=None, alias="AWS_REGION")
    s3_endpoint_url: str | None = None
    capture_snapshots: bool = True

    presigned_url_expiry_seconds: int = PRESIGNED_URL_EXPIRY_SECONDS
    idempotency_ttl_hours: int = IDEMPOTENCY_TTL_HOURS
    default_page_size: int = DEFAULT_PAGE_SIZE
    max_page_size: int = MAX_PAGE_SIZE

    max_concurrent_feeds: int = MAX_CONCURRENT_FEEDS
    user_agent: str = USER_AGENT

    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("presigned_url_expiry_seconds")
    @classmethod
    def _validate_expiry(cls, v: int) -> int:
        if not 1 <= v <= 7 * 24 * 3600:
            raise ValueError(f"presigned_url_expiry_seconds must be 1-604800, got {v}")
        return v

    @field_validator("idempotency_ttl_hours", "default_page_size", "max_page_size", "max_concurrent_feeds")
    @classmethod
    def _validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"must be positive, got {v}")
        return v

    @property
    def db_path(self) -> Path:
        return self.data_dir / "ledger.db"

    @property
    def blob_dir(self) -> Path:
        return self.data_dir / "blobs"


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config()
