from pydantic_settings import BaseSettings
from functools import lru_cache
import os


class Settings(BaseSettings):
    # Browser
    user_data_dir: str = os.path.join(os.path.dirname(__file__), "..", "..", ".browser-profile")
    headless: bool = False
    page_load_timeout: int = 30000  # milliseconds
    viewport_width: int = 1440
    viewport_height: int = 960

    # Attachments
    attachment_fetch_timeout: float = 7.0  # seconds, per candidate URL
    max_inline_attachment_bytes: int = 64 * 1024 * 1024
    strict_attachments: bool = False

    # Network tracker
    max_tracked_network_records: int = 2400

    log_level: str = "INFO"

    # Server
    host: str = "127.0.0.1"
    port: int = 48765
    cors_origins: list[str] = ["*"]

    class Config:
        # Look for .env in the repo root (two levels up from backend/chatcapture/)
        env_file = os.path.join(os.path.dirname(__file__), "..", "..", ".env")
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings():
    return Settings()
