from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration settings for the agent dispatch system."""

    model_config = SettingsConfigDict(
        env_prefix="LM_DISPATCH_",
        env_file=".env",
        extra="ignore",
    )

    default_model_id: str = "gpt-4o-mini"
    default_max_turns: int = 6
    agentic_max_turns: int = 10
    default_caller: str = "Unknown"

    output_channel_name: str = "Agent Dispatch"
    log_max_lines: int = 5000
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "console"
    service_name: str = "lm-dispatch"

    monitor_host: str = "127.0.0.1"
    monitor_port: int = 8765


@lru_cache
def get_settings() -> Settings:
    return Settings()
