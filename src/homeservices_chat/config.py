"""Runtime configuration for the chat core."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_API_URL = "https://darlyn-alt-backend.onrender.com"


class ChatSettings(BaseModel):
    """Tunables for the chat core, overridable through the environment."""

    api_url: str = DEFAULT_API_URL
    api_token: Optional[str] = None
    request_timeout: float = Field(default=15.0, gt=0)
    image_upload_timeout: float = Field(default=30.0, gt=0)
    heartbeat_interval: float = Field(default=30.0, gt=0)
    read_receipt_debounce: float = Field(default=0.5, ge=0)
    identity_cache_path: Optional[Path] = None

    @classmethod
    def from_env(cls) -> "ChatSettings":
        """Build settings from CHAT_* environment variables."""
        values = {
            "api_url": os.getenv("CHAT_API_URL", DEFAULT_API_URL),
            "api_token": os.getenv("CHAT_API_TOKEN"),
            "request_timeout": os.getenv("CHAT_REQUEST_TIMEOUT", "15"),
            "image_upload_timeout": os.getenv("CHAT_IMAGE_UPLOAD_TIMEOUT", "30"),
            "heartbeat_interval": os.getenv("CHAT_HEARTBEAT_INTERVAL", "30"),
            "read_receipt_debounce": os.getenv("CHAT_READ_RECEIPT_DEBOUNCE", "0.5"),
            "identity_cache_path": os.getenv("CHAT_IDENTITY_CACHE_PATH"),
        }
        return cls.model_validate(values)
