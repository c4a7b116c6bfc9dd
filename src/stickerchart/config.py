from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="STICKERCHART_",
        env_file=".env",
        extra="ignore",
    )

    database_url: str = Field("sqlite:///eventmarker.db")
    documents_root: Path = Field(Path("./data/documents"))
    cache_root: Path = Field(Path("./data/cache"))
    backup_dir_name: str = Field("Sticker-Chart")
    backup_base_name: str = Field("stickerchart.back")
    photos_dir_name: str = Field("photos")
    icons_dir_name: str = Field("icons")
    default_code: str = Field("0000", pattern=r"^\d{4}$")
    schema_version: int = Field(1, ge=1)


settings = Settings()
