"""LangChain chat-model interpreter, model registry and router."""
