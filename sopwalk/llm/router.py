"""Creates LangChain chat models for the interpreter."""

from __future__ import annotations

import logging

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.runnables import Runnable
from langchain_ollama import ChatOllama
from langchain_openai import ChatOpenAI

from sopwalk.llm.config import FALLBACK_CHAINS, MODEL_REGISTRY, LLMSettings, ModelID, ModelSpec

log = logging.getLogger(__name__)

__all__ = ["LLMRouter"]


class LLMRouter:
    """Creates and caches chat models by ModelID."""

    def __init__(self, settings: LLMSettings | None = None) -> None:
        self._settings = settings or LLMSettings()
        self._cache: dict[ModelID, BaseChatModel] = {}

    @property
    def settings(self) -> LLMSettings:
        return self._settings

    def get_model(self, model_id: ModelID | None = None) -> BaseChatModel:
        """Get or create the chat model for *model_id* (default: the
        configured interpreter model)."""
        model_id = model_id or self._settings.interpreter_model
        if model_id not in self._cache:
            self._cache[model_id] = self._create_model(MODEL_REGISTRY[model_id])
        return self._cache[model_id]

    def get_model_with_fallbacks(
        self,
        model_id: ModelID | None = None,
        *,
        tools: list[dict] | None = None,
    ) -> Runnable:
        """Primary model plus its fallback chain, each optionally bound to
        *tools*.  Tool binding has to happen before ``with_fallbacks`` since
        the wrapper does not expose ``bind_tools``."""
        model_id = model_id or self._settings.interpreter_model
        chain = [model_id, *FALLBACK_CHAINS.get(model_id, [])]
        runnables: list[Runnable] = []
        for mid in chain:
            try:
                model = self.get_model(mid)
            except Exception as exc:
                if mid == model_id:
                    raise
                log.warning("could not create fallback model %s: %s", mid, exc)
                continue
            runnables.append(model.bind_tools(tools) if tools else model)
        primary, *fallbacks = runnables
        return primary.with_fallbacks(fallbacks) if fallbacks else primary

    def _create_model(self, spec: ModelSpec) -> BaseChatModel:
        """Instantiate a LangChain chat model from a ModelSpec."""
        if spec.provider == "openai":
            return ChatOpenAI(
                model=spec.model_name,
                api_key=self._settings.openai_api_key,
                base_url=self._settings.openai_base_url,
                temperature=spec.temperature,
                max_tokens=spec.max_tokens,
            )
        elif spec.provider == "anthropic":
            return ChatAnthropic(
                model=spec.model_name,
                api_key=self._settings.anthropic_api_key,
                temperature=spec.temperature,
                max_tokens=spec.max_tokens,
            )
        elif spec.provider == "ollama":
            return ChatOllama(
                model=spec.model_name,
                base_url=self._settings.ollama_base_url,
                temperature=spec.temperature,
                num_predict=spec.max_tokens,
            )
        else:
            raise ValueError(f"Unknown provider: {spec.provider}")
