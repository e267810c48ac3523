"""Environment-driven engine settings."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class EngineSettings(BaseSettings):
    """Limits and timeouts for walking procedures.

    Read from ``SOPWALK_*`` environment variables or a ``.env`` file.
    """

    max_transitions: int = Field(default=10, ge=1)
    tool_timeout_s: float = Field(default=30.0, gt=0)
    interpreter_rounds: int = Field(default=3, ge=1)  # interpreter calls per turn
    log_level: str = "INFO"

    model_config = {"env_prefix": "SOPWALK_", "env_file": ".env", "extra": "ignore"}
