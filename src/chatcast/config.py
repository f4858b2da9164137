"""Application configuration via environment variables.

Uses pydantic-settings to load config from env vars with CHATCAST_ prefix.
No YAML files, no file-based config — just env vars (12-factor app style).

Learn: The broadcast knobs (queue sizes, worker count, reaper timings)
live here too, so a deployment can trade memory for burst tolerance
without code changes.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All app configuration. Set via CHATCAST_* env vars."""

    # Auth
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # Server
    environment: str = "development"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    log_json: bool = False

    # CORS
    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Channels
    default_channel: str = "everyone"
    public_channels: list[str] = ["everyone", "channel_for_everyone"]

    # Fan-out
    max_connections: int = 10_000
    dispatch_workers: int = 4
    intake_capacity: int = 1024  # pending events per worker shard
    outbound_queue_size: int = 256  # pending frames per connection
    yield_every: int = 64  # members delivered before yielding to the loop

    # Reaper
    idle_timeout_seconds: float = 300.0
    drain_grace_seconds: float = 30.0
    reaper_interval_seconds: float = 15.0
    channel_retention_seconds: float = 60.0

    # Payload formatting ("iso" or a strftime pattern)
    message_time_format: str = "iso"

    # Redis relay (cross-process ingress)
    relay_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    relay_channel_prefix: str = "chatcast:events:"
    relay_retry_seconds: float = 1.0

    model_config = {"env_prefix": "CHATCAST_"}

    @model_validator(mode="after")
    def validate_production_settings(self):
        """Ensure sensitive defaults are changed in non-development environments."""
        if (
            self.environment != "development"
            and self.jwt_secret == "change-me-in-production"
        ):
            raise ValueError(
                "CHATCAST_JWT_SECRET must be set to a secure value in "
                "non-development environments. Generate one with: "
                'python -c "import secrets; print(secrets.token_urlsafe(32))"'
            )
        if self.dispatch_workers < 1:
            raise ValueError("CHATCAST_DISPATCH_WORKERS must be at least 1")
        if self.intake_capacity < 1 or self.outbound_queue_size < 1:
            raise ValueError("Queue capacities must be at least 1")
        return self


# Singleton — import this everywhere
settings = Settings()
