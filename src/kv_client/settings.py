from functools import lru_cache
from typing import Dict, Optional

from pydantic_settings import BaseSettings


class KvSettings(BaseSettings):
    """Client settings from the environment (``KV_*``) or a ``.env`` file."""

    BASE_URL: str
    API_KEY: Optional[str] = None
    TIMEOUT: float = 30.0
    STREAM_RECONNECT_DELAY_MS: int = 3000
    POLL_RECONNECT_DELAY_MS: int = 5000
    POLL_INTERVAL_MS: int = 1000

    def to_config(self, headers: Optional[Dict[str, str]] = None) -> dict:
        cfg = {
            "base_url": self.BASE_URL,
            "timeout": self.TIMEOUT,
            "stream_reconnect_delay": self.STREAM_RECONNECT_DELAY_MS,
            "poll_reconnect_delay": self.POLL_RECONNECT_DELAY_MS,
            "poll_interval": self.POLL_INTERVAL_MS,
        }
        if self.API_KEY:
            cfg["api_key"] = self.API_KEY
        if headers:
            cfg["headers"] = headers
        return cfg

    class Config:
        env_prefix = "KV_"
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> KvSettings:
    return KvSettings()
