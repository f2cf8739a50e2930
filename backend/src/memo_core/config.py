"""Configuration management."""
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings."""

    # Database
    database_url: str = Field(
        default="sqlite:///./memos.db",
        description="SQLAlchemy database URL"
    )

    # Timeout budgets (seconds)
    query_timeout_seconds: float = Field(default=5.0)
    upload_timeout_seconds: float = Field(default=30.0)

    # Pagination
    default_page_size: int = Field(default=10)
    max_page_size: int = Field(default=100)

    # Reject update/delete of soft-deleted rows even when the version matches
    guard_deleted_mutations: bool = Field(default=False)

    # Cloudinary media storage
    cloudinary_cloud_name: str = Field(default="", description="Cloudinary cloud name")
    cloudinary_api_key: str = Field(default="", description="Cloudinary API key")
    cloudinary_api_secret: str = Field(default="", description="Cloudinary API secret")

    log_level: str = Field(default="INFO")

    class Config:
        env_prefix = "MEMO_"
        env_file = ".env"


def get_settings() -> Settings:
    """Get settings - environment variables take priority over .env."""
    return Settings()


settings = get_settings()
