"""Shared test fixtures for sopwalk."""

from __future__ import annotations

import pytest

from sopwalk.config import EngineSettings
from sopwalk.engine.walker import diagnostics
from sopwalk.graph.loader import load_bundled, load_procedure
from sopwalk.graph.nodes import ProcedureGraph
from sopwalk.llm.config import LLMSettings
from sopwalk.llm.router import LLMRouter
from tests.fakes import LATE_ORDER_DOC, FakeTools


@pytest.fixture(autouse=True)
def reset_diagnostics():
    """Start every test with zeroed walker counters."""
    diagnostics.reset()
    yield
    diagnostics.reset()


@pytest.fixture(autouse=True)
def set_test_env(monkeypatch):
    """Keep settings independent of the developer's environment."""
    for var in ("SOPWALK_MAX_TRANSITIONS", "SOPWALK_TOOL_TIMEOUT_S", "SOPWALK_INTERPRETER_ROUNDS"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-fake")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test-fake")
    monkeypatch.setenv("OLLAMA_BASE_URL", "http://localhost:11435")


@pytest.fixture
def engine_settings() -> EngineSettings:
    return EngineSettings(max_transitions=10, tool_timeout_s=2.0, interpreter_rounds=3)


@pytest.fixture
def late_order_graph() -> ProcedureGraph:
    """Tool node -> decision -> two end nodes."""
    return load_procedure(LATE_ORDER_DOC)


@pytest.fixture
def order_delay_graph() -> ProcedureGraph:
    return load_bundled("order-delay")


@pytest.fixture
def extended_graph() -> ProcedureGraph:
    return load_bundled("order-delay-extended")


@pytest.fixture
def late_order_tools() -> FakeTools:
    return FakeTools({"getOrderStatus": {"orderId": "12345", "minutesLate": 25}})


@pytest.fixture
def llm_settings() -> LLMSettings:
    """Test LLM settings."""
    return LLMSettings(
        openai_api_key="sk-test-fake",
        anthropic_api_key="sk-ant-test-fake",
        ollama_base_url="http://localhost:11435",
    )


@pytest.fixture
def router(llm_settings) -> LLMRouter:
    """Test LLM router."""
    return LLMRouter(llm_settings)
