"""
Application configuration using pydantic-settings.
Loads from DRIVETRACK_* environment variables (or .env) with sensible defaults.
"""
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

KNOWN_PROVIDERS = ("serial", "zmq", "simulated")
KNOWN_STORES = ("rest", "local", "memory")


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="DRIVETRACK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = "DriveTrack"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Hosted backend (auth + location_tracks REST table)
    supabase_url: str = ""
    supabase_anon_key: str = ""
    tracks_table: str = "location_tracks"
    http_timeout_s: float = 10.0
    session_file: Optional[str] = None  # Persist auth session between CLI runs

    # Persistence sink
    track_store: str = "rest"  # rest, local, memory
    local_store_path: str = "drivetrack.db"
    history_default_limit: int = 5

    # Location providers, tried in this order
    providers: list[str] = ["serial", "zmq"]
    high_accuracy: bool = True
    sample_timeout_ms: int = 1000

    # Native serial GPS receiver
    gps_device: str = "/dev/ttyUSB0"
    gps_fallback_devices: list[str] = ["/dev/ttyUSB1", "/dev/ttyACM0", "/dev/ttyACM1"]
    gps_baud: int = 9600
    gps_max_hdop: float = 5.0  # Ceiling applied in high-accuracy mode

    # ZMQ GPS feed
    zmq_gps_endpoint: str = "tcp://localhost:5558"

    # Notifications
    notification_history: int = 50

    @model_validator(mode="after")
    def check_backends(self):
        """Reject provider/store names we do not know how to build."""
        unknown = [p for p in self.providers if p not in KNOWN_PROVIDERS]
        if unknown:
            raise ValueError(
                f"Unknown location provider(s): {unknown}. "
                f"Choose from {list(KNOWN_PROVIDERS)}"
            )
        if not self.providers:
            raise ValueError("At least one location provider must be configured")
        if self.track_store not in KNOWN_STORES:
            raise ValueError(
                f"Unknown track store '{self.track_store}'. Choose from {list(KNOWN_STORES)}"
            )
        if self.track_store == "rest" and not self.debug:
            if not self.supabase_url or not self.supabase_anon_key:
                raise ValueError(
                    "DRIVETRACK_SUPABASE_URL and DRIVETRACK_SUPABASE_ANON_KEY must be set "
                    "for the rest track store (or use DRIVETRACK_TRACK_STORE=local)"
                )
        return self


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
