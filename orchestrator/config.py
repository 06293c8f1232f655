"""Configuration loader for the orchestrator with validation."""
import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

load_dotenv()


def _csv(value: str) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


@dataclass
class Config:
    """
    Orchestrator configuration from environment variables.

    All settings are validated on load to fail fast if misconfigured.
    Rate limits are not configured here: they live in the `system_config`
    table so they can be changed without a restart.
    """

    # Runtime
    environment: str = "development"  # development (virtual phone) or production (SMS bridge)
    system_phone: str = "+1234567890"
    system_name: str = "SMS System"

    # SMS bridge (production transport)
    bridge_url: str = ""
    bridge_api_key: str = ""

    # Agent hand-off
    session_timeout_seconds: int = 30 * 60
    connection_request_timeout_seconds: int = 5 * 60
    session_idle_abandon_seconds: int = 60 * 60
    agent_trigger_words: list[str] = field(default_factory=list)

    # Broadcasts
    broadcast_max_recipients: int = 1000
    broadcast_send_interval_seconds: float = 0.2
    broadcast_global_backoff_seconds: float = 60.0

    # Scheduler tick intervals
    program_tick_seconds: int = 10
    broadcast_poll_seconds: int = 60
    agent_deadline_tick_seconds: int = 15
    agent_sweep_seconds: int = 60 * 60
    rate_limit_cleanup_seconds: int = 60 * 60

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.environment not in ["development", "production"]:
            raise ValueError("environment must be 'development' or 'production'")

        if self.environment == "production" and not self.bridge_url:
            raise ValueError("BRIDGE_URL is required in production")

        if self.session_timeout_seconds < 60:
            raise ValueError("Session timeout must be at least 60 seconds")

        if self.connection_request_timeout_seconds < 30:
            raise ValueError("Connection request timeout must be at least 30 seconds")

        if not 1 <= self.broadcast_max_recipients <= 100000:
            raise ValueError("broadcast_max_recipients must be between 1 and 100000")

        if self.broadcast_send_interval_seconds < 0 or self.broadcast_global_backoff_seconds < 0:
            raise ValueError("broadcast pacing values must not be negative")

    @classmethod
    def from_env(cls) -> "Config":
        """
        Load configuration from environment variables.

        Raises:
            ValueError: If configuration values are invalid
        """
        return cls(
            environment=os.getenv("ENVIRONMENT", "development").lower(),
            system_phone=os.getenv("SYSTEM_PHONE", "+1234567890"),
            system_name=os.getenv("SYSTEM_NAME", "SMS System"),
            bridge_url=os.getenv("BRIDGE_URL", ""),
            bridge_api_key=os.getenv("BRIDGE_API_KEY", ""),
            session_timeout_seconds=int(os.getenv("SESSION_TIMEOUT_MINUTES", "30")) * 60,
            connection_request_timeout_seconds=int(os.getenv("CONNECTION_REQUEST_TIMEOUT", "300")),
            session_idle_abandon_seconds=int(os.getenv("SESSION_IDLE_ABANDON_SECONDS", "3600")),
            agent_trigger_words=_csv(os.getenv("AGENT_TRIGGER_WORDS", "")),
            broadcast_max_recipients=int(os.getenv("BROADCAST_MAX_RECIPIENTS", "1000")),
            broadcast_send_interval_seconds=float(os.getenv("BROADCAST_SEND_INTERVAL", "0.2")),
            broadcast_global_backoff_seconds=float(os.getenv("BROADCAST_GLOBAL_BACKOFF", "60")),
        )

    @property
    def is_production(self) -> bool:
        """Check if messages go out through the real SMS bridge."""
        return self.environment == "production"
