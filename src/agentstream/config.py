import os

from pydantic import BaseModel, field_validator

DEFAULT_BACKEND_URL = "http://localhost:4000"


class Settings(BaseModel):
    """Client configuration.

    Args:
        backend_url: Base address of the agent backend.
        agent_id: Agent to address when no agent is passed explicitly.
        connect_timeout: Seconds allowed to establish the connection.
        idle_timeout: Seconds to wait for the next chunk before ending the
            turn as stalled. ``None`` waits indefinitely.
    """

    backend_url: str = DEFAULT_BACKEND_URL
    agent_id: str | None = None
    connect_timeout: float = 10.0
    idle_timeout: float | None = None

    @field_validator("backend_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("idle_timeout")
    @classmethod
    def positive_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("idle_timeout must be positive")
        return value

    @classmethod
    def from_env(cls) -> "Settings":
        """Read settings from ``AGENTSTREAM_*`` environment variables."""
        values = {
            "backend_url": os.getenv("AGENTSTREAM_BACKEND_URL"),
            "agent_id": os.getenv("AGENTSTREAM_AGENT_ID"),
            "connect_timeout": os.getenv("AGENTSTREAM_CONNECT_TIMEOUT"),
            "idle_timeout": os.getenv("AGENTSTREAM_IDLE_TIMEOUT"),
        }
        return cls(**{k: v for k, v in values.items() if v})
