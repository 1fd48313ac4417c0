import json
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load env values for components that read os.environ directly (e.g., boto3 credential chain).
_project_root = Path(__file__).resolve().parents[1]
load_dotenv(_project_root / ".env", override=False)


def _coerce_json(value: str):
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"

    DATABASE_URL: str
    DB_POOL_SIZE: int = 20
    DB_POOL_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30

    CLERK_JWT_ISSUER: str
    CLERK_JWKS_URL: str
    CLERK_AUDIENCE: list[str] = ["http://localhost:3000", "backend"]

    BACKEND_CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    MEDIA_STORAGE_BUCKET: str | None = None
    MEDIA_STORAGE_REGION: str = "us-east-1"
    # Only set for S3-compatible stores; AWS resolves the endpoint from the region.
    MEDIA_STORAGE_ENDPOINT: str | None = None
    MEDIA_STORAGE_ACCESS_KEY: str | None = None
    MEDIA_STORAGE_SECRET_KEY: str | None = None
    # CDN or custom host serving the bucket; defaults to the virtual-hosted S3 URL.
    MEDIA_STORAGE_PUBLIC_BASE_URL: str | None = None
    MEDIA_STORAGE_FORCE_PATH_STYLE: bool = False
    MEDIA_STORAGE_MAX_OBJECT_BYTES: int = 500 * 1024 * 1024
    MEDIA_STORAGE_MULTIPART_TIMEOUT_SECONDS: float = 600.0
    MEDIA_STORAGE_MAX_ATTEMPTS: int = 3
    MEDIA_STORAGE_REQUEST_TIMEOUT_SECONDS: float = 60.0

    INGEST_UPLOAD_MAX_CONCURRENCY: int = 4

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def split_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("CLERK_AUDIENCE", mode="before")
    @classmethod
    def split_audience(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [aud.strip() for aud in value.split(",") if aud.strip()]
        return value

    @field_validator("INGEST_UPLOAD_MAX_CONCURRENCY")
    @classmethod
    def positive_concurrency(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("INGEST_UPLOAD_MAX_CONCURRENCY must be greater than zero.")
        return value

    model_config = SettingsConfigDict(env_file=".env", env_json_loads=_coerce_json, extra="ignore")


settings = Settings()
