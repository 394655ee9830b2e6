"""
Configuration for the fleet monitor.

Loads settings from environment variables (prefix MONITOR_) and an optional
.env file.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class MonitorSettings(BaseSettings):
    """Application settings loaded from environment."""

    # Backend
    base_url: str = "http://localhost:8000"
    ws_url: Optional[str] = None
    auth_token: Optional[str] = None

    # Scope (share token wins when both are set)
    account_id: Optional[str] = None
    share_token: Optional[str] = None

    # Snapshot polling
    refresh_interval: float = 30.0
    auto_refresh: bool = True

    # History
    history_ttl: float = 60.0
    history_source: Optional[str] = None

    # Push channel backoff (seconds)
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_jitter: float = 0.3
    reconnect_max_attempts: Optional[int] = None

    # REST
    request_timeout: float = 30.0
    max_retries: int = 3

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="MONITOR_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def channel_url(self) -> str:
        """Push channel origin; derived from base_url when not set."""
        if self.ws_url:
            return self.ws_url.rstrip("/")
        base = self.base_url.rstrip("/")
        if base.startswith("https://"):
            return "wss://" + base[len("https://"):]
        if base.startswith("http://"):
            return "ws://" + base[len("http://"):]
        return base

    @property
    def headers(self) -> dict[str, str]:
        if self.auth_token:
            return {"Authorization": f"Bearer {self.auth_token}"}
        return {}
