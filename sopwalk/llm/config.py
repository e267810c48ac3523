"""Chat model registry and environment-driven LLM settings."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel
from pydantic_settings import BaseSettings


class ModelID(StrEnum):
    """Registered interpreter models."""

    GPT4O_MINI = "gpt4o_mini"
    GPT4O = "gpt4o"
    CLAUDE_SONNET = "claude_sonnet"
    OLLAMA_QWEN = "ollama_qwen"


class ModelSpec(BaseModel):
    """Specification for a registered model."""

    model_id: ModelID
    provider: str  # "openai", "anthropic", "ollama"
    model_name: str
    max_tokens: int = 1024
    temperature: float = 0.0


MODEL_REGISTRY: dict[ModelID, ModelSpec] = {
    ModelID.GPT4O_MINI: ModelSpec(
        model_id=ModelID.GPT4O_MINI,
        provider="openai",
        model_name="gpt-4o-mini",
    ),
    ModelID.GPT4O: ModelSpec(
        model_id=ModelID.GPT4O,
        provider="openai",
        model_name="gpt-4o",
    ),
    ModelID.CLAUDE_SONNET: ModelSpec(
        model_id=ModelID.CLAUDE_SONNET,
        provider="anthropic",
        model_name="claude-sonnet-4-5",
    ),
    ModelID.OLLAMA_QWEN: ModelSpec(
        model_id=ModelID.OLLAMA_QWEN,
        provider="ollama",
        model_name="qwen2.5:7b",
        max_tokens=768,
    ),
}

# Tried in order when the primary interpreter model errors.
FALLBACK_CHAINS: dict[ModelID, list[ModelID]] = {
    ModelID.GPT4O_MINI: [ModelID.GPT4O, ModelID.CLAUDE_SONNET],
    ModelID.GPT4O: [ModelID.GPT4O_MINI, ModelID.CLAUDE_SONNET],
    ModelID.CLAUDE_SONNET: [ModelID.GPT4O],
    ModelID.OLLAMA_QWEN: [ModelID.GPT4O_MINI],
}


class LLMSettings(BaseSettings):
    """Environment-driven LLM settings."""

    interpreter_model: ModelID = ModelID.GPT4O_MINI
    openai_api_key: str = ""
    openai_base_url: str | None = None
    anthropic_api_key: str = ""
    ollama_base_url: str = "http://localhost:11434"

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}
