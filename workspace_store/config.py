from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load env values for components that read os.environ directly (e.g., boto3 credential chain).
_project_root = Path(__file__).resolve().parents[1]
load_dotenv(_project_root / ".env", override=False)


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"

    DATABASE_URL: str = "sqlite:///./workspace_store.db"
    DB_POOL_SIZE: int = 10
    DB_POOL_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_ECHO: bool = False

    LOG_LEVEL: str = "INFO"

    TRANSACTION_MAX_RETRIES: int = 3
    TRANSACTION_RETRY_BASE_SECONDS: float = 1.0

    # TTL archival. Archives land in S3-compatible storage when a bucket is set.
    ARCHIVE_S3_BUCKET: str | None = None
    ARCHIVE_S3_ENDPOINT: str | None = None
    ARCHIVE_S3_REGION: str = "us-east-1"
    ARCHIVE_S3_ACCESS_KEY: str | None = None
    ARCHIVE_S3_SECRET_KEY: str | None = None
    ARCHIVE_S3_PREFIX: str = "archived-workspaces"
    ARCHIVE_BATCH_SIZE: int = 10
    ARCHIVE_DRY_RUN: bool = False

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return str(value).strip().upper() or "INFO"

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
