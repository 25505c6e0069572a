from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

from .relay.errors import ConfigurationError


# Get the directory where this config.py file is located
_config_dir = Path(__file__).parent
_env_file = _config_dir.parent / ".env"  # services/relay/.env


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_env_file),
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Subscriber WebSocket server
    host: str = "0.0.0.0"
    port: int = 8080

    # Health API (FastAPI)
    health_port: int = 8081

    # Upstream provider
    alpaca_feed: str = "sip"  # "sip" (paid, consolidated) | "iex" (free)
    alpaca_ws_url: str = ""  # overrides the feed-derived URL when set
    alpaca_key_id: str = ""
    alpaca_secret_key: str = ""

    # Reconnect backoff (seconds)
    reconnect_initial_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_multiplier: float = 2.0

    # Ping interval for both clients and upstream (seconds)
    heartbeat_interval: float = 30.0
    client_queue_size: int = 1000  # frames buffered per subscriber before dropping

    # Comma-separated list of allowed Origin headers; empty allows every origin
    allowed_origins: str = ""

    log_level: str = "INFO"

    def get_upstream_url(self) -> str:
        """Explicit URL if configured, otherwise the v2 stream for the selected feed."""
        if self.alpaca_ws_url.strip():
            return self.alpaca_ws_url.strip()
        return f"wss://stream.data.alpaca.markets/v2/{self.alpaca_feed.strip().lower()}"

    def get_allowed_origins(self) -> list[str] | None:
        """Parse allowed origins. None means all origins are allowed."""
        origins = [o.strip() for o in self.allowed_origins.split(",") if o.strip()]
        return origins or None

    def require_credentials(self) -> tuple[str, str]:
        """Return (key, secret) or raise ConfigurationError if either is missing."""
        missing = [
            name for name, value in (
                ("ALPACA_KEY_ID", self.alpaca_key_id),
                ("ALPACA_SECRET_KEY", self.alpaca_secret_key),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"missing {', '.join(missing)}")
        return self.alpaca_key_id, self.alpaca_secret_key


def get_settings() -> Settings:
    return Settings()
