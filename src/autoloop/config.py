"""Configuration settings for the application."""

from __future__ import annotations

from pydantic import (
    BaseModel,
    Field,
)
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = True
    DATA_DIR: str = "/data"
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # Provider / transport configuration
    TRANSPORT: str = "openai"  # Options: openai, anthropic, http
    PROVIDER_TYPE: str = "ollama"  # Options: openai, openrouter, anthropic, ollama, ...
    PROVIDER_BASE_URL: str = "http://localhost:11434/v1"
    PROVIDER_API_KEY: str | None = None
    PROVIDER_STREAMING_TOOLS: bool | None = None  # Explicit capability flag, unset = heuristic
    MODEL: str = "llama3.1"
    OPENAI_API_KEY: str | None = None
    ANTHROPIC_API_KEY: str | None = None
    REQUEST_TIMEOUT: float = 120.0

    # Autonomous agent defaults
    AGENT_MAX_RETRIES: int = 3
    AGENT_RETRY_DELAY: float = 1.0  # Seconds between attempts of the same tool call
    AGENT_MAX_TOOL_CALLS: int = 10
    AGENT_ENABLE_PROGRESS_TRACKING: bool = True
    ENABLE_STREAMING: bool = True
    TEMPERATURE: float = 0.7
    MAX_TOKENS: int | None = None
    TOP_P: float | None = None

    # Tools
    ENABLE_TOOLS: bool = True
    ENABLE_PROTOCOL_TOOLS: bool = False
    STORED_TOOLS_FILE: str = "stored_tools.json"  # Relative paths resolve against DATA_DIR
    PROTOCOL_SERVERS_FILE: str = "protocol_servers.json"
    SANDBOX_TIMEOUT: float = 30.0

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()


class AgentConfig(BaseModel):
    """
    Policy for one agent-loop invocation.

    Built per message and passed explicitly through the loop, so two conversations running at the
    same time never share a mutable policy object.
    """

    max_retries: int = Field(3, ge=0, description="Attempts per tool call and failed-step ceiling")
    retry_delay: float = Field(1.0, ge=0, description="Fixed delay in seconds between attempts")
    max_tool_calls: int = Field(10, ge=0, description="Configured step budget")
    enable_progress_tracking: bool = True
    enable_streaming: bool = True
    temperature: float | None = 0.7
    max_tokens: int | None = None
    top_p: float | None = None

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "AgentConfig":
        """Snapshot the agent defaults from *source* (the global settings by default)."""
        source = source or settings
        return cls(
            max_retries=source.AGENT_MAX_RETRIES,
            retry_delay=source.AGENT_RETRY_DELAY,
            max_tool_calls=source.AGENT_MAX_TOOL_CALLS,
            enable_progress_tracking=source.AGENT_ENABLE_PROGRESS_TRACKING,
            enable_streaming=source.ENABLE_STREAMING,
            temperature=source.TEMPERATURE,
            max_tokens=source.MAX_TOKENS,
            top_p=source.TOP_P,
        )

    def request_options(self) -> dict[str, float | int]:
        """Sampling options forwarded to the transport, without unset values."""
        options = {
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
        }
        return {key: value for key, value in options.items() if value is not None}
