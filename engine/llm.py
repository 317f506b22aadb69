"""
Relay — LLM Provider Factory and call_llm Adapter

The execution core only knows one LLM capability:

    call_llm({"messages": [...], "tools": [...], "llm_config_id": ...})
        -> str | {"content": str, "tool_calls": [{id, name, arguments}]}

This module builds that capability on top of a LangChain BaseChatModel,
so any provider LangChain supports can back an agent node.

Provider selection (in priority order):
  1. Explicit ``provider`` argument to create_chat_model()
  2. The ``llm.configs.<llm_config_id>`` entry in relay.yaml
  3. LLM_PROVIDER environment variable
  4. Auto-detect from available API key env vars

Design rules:
  - No provider-specific imports at module level (lazy imports only)
  - Unknown model strings pass through to the provider unchanged
"""

from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Callable

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

logger = logging.getLogger("relay.llm")

PROVIDER_DEFAULTS = {
    "openai": "gpt-4o-mini",
    "azure": "gpt-4o-mini",
    "google": "gemini-2.0-flash",
    "anthropic": "claude-3-5-haiku-latest",
    "ollama": "llama3.1",
}


# ═══════════════════════════════════════════════════════════════════════
# Provider detection
# ═══════════════════════════════════════════════════════════════════════

def detect_provider() -> str:
    """
    Detect LLM provider. Priority:
      1. LLM_PROVIDER env var
      2. Auto-detect from API key env vars
    """
    explicit = os.environ.get("LLM_PROVIDER", "").lower().strip()
    if explicit:
        return explicit
    if os.environ.get("AZURE_OPENAI_ENDPOINT") and os.environ.get("AZURE_OPENAI_API_KEY"):
        return "azure"
    if os.environ.get("OPENAI_API_KEY"):
        return "openai"
    if os.environ.get("ANTHROPIC_API_KEY"):
        return "anthropic"
    if os.environ.get("GOOGLE_API_KEY"):
        return "google"
    if os.environ.get("OLLAMA_HOST"):
        return "ollama"

    raise EnvironmentError(
        "No LLM provider detected. Set one of:\n"
        "  LLM_PROVIDER=openai|azure|anthropic|google|ollama\n"
        "  Or set provider API key env vars:\n"
        "    OPENAI_API_KEY=...\n"
        "    AZURE_OPENAI_ENDPOINT=... + AZURE_OPENAI_API_KEY=...\n"
        "    ANTHROPIC_API_KEY=...\n"
        "    GOOGLE_API_KEY=..."
    )


# ═══════════════════════════════════════════════════════════════════════
# Provider factories (lazy imports)
# ═══════════════════════════════════════════════════════════════════════

def _create_openai(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_openai import ChatOpenAI
    return ChatOpenAI(model=model, temperature=temperature, **kwargs)


def _create_azure(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_openai import AzureChatOpenAI
    return AzureChatOpenAI(
        azure_deployment=model,
        azure_endpoint=os.environ["AZURE_OPENAI_ENDPOINT"],
        api_key=os.environ.get("AZURE_OPENAI_API_KEY"),
        api_version=os.environ.get("AZURE_OPENAI_VERSION", "2024-12-01-preview"),
        temperature=temperature,
        **kwargs,
    )


def _create_anthropic(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_anthropic import ChatAnthropic
    return ChatAnthropic(model=model, temperature=temperature, **kwargs)


def _create_google(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_google_genai import ChatGoogleGenerativeAI
    return ChatGoogleGenerativeAI(model=model, temperature=temperature, **kwargs)


def _create_ollama(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_ollama import ChatOllama
    if os.environ.get("OLLAMA_HOST") and "base_url" not in kwargs:
        kwargs["base_url"] = os.environ["OLLAMA_HOST"]
    return ChatOllama(model=model, temperature=temperature, **kwargs)


_FACTORIES: dict[str, Callable[..., BaseChatModel]] = {
    "openai":    _create_openai,
    "azure":     _create_azure,
    "anthropic": _create_anthropic,
    "google":    _create_google,
    "ollama":    _create_ollama,
}


def create_chat_model(
    provider: str | None = None,
    model: str | None = None,
    temperature: float = 0.1,
    **kwargs,
) -> BaseChatModel:
    """
    Create a LangChain chat model.

    Args:
        provider:    Force a provider. If None, auto-detected.
        model:       Provider-specific model name; provider default if None.
        temperature: Sampling temperature.
        **kwargs:    Passed through to the underlying LangChain constructor.
    """
    provider = (provider or detect_provider()).lower().strip()
    if provider not in _FACTORIES:
        raise ValueError(
            f"Unknown provider '{provider}'. "
            f"Supported: {', '.join(_FACTORIES.keys())}"
        )
    model = model or os.environ.get("LLM_DEFAULT_MODEL", "").strip() or PROVIDER_DEFAULTS[provider]

    timeout = kwargs.pop("timeout", None)
    if timeout is None:
        env_timeout = os.environ.get("LLM_TIMEOUT_SECONDS", "").strip()
        if env_timeout:
            timeout = int(env_timeout)
    if timeout:
        kwargs["timeout"] = timeout

    logger.info("Creating chat model provider=%s model=%s", provider, model)
    return _FACTORIES[provider](model, temperature, **kwargs)


# ═══════════════════════════════════════════════════════════════════════
# Message conversion
# ═══════════════════════════════════════════════════════════════════════

def _arguments_dict(arguments: Any) -> dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if isinstance(arguments, str) and arguments.strip():
        try:
            parsed = json.loads(arguments)
        except json.JSONDecodeError:
            return {"input": arguments}
        return parsed if isinstance(parsed, dict) else {"input": parsed}
    return {}


def to_langchain_messages(messages: list[dict[str, Any]]) -> list[BaseMessage]:
    """Convert role/content dicts into LangChain message objects."""
    converted: list[BaseMessage] = []
    for m in messages:
        role = m.get("role")
        content = m.get("content") or ""
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "assistant":
            tool_calls = [
                {"id": c.get("id"), "name": c["name"], "args": _arguments_dict(c.get("arguments"))}
                for c in m.get("tool_calls") or []
            ]
            converted.append(AIMessage(content=content, tool_calls=tool_calls))
        elif role == "tool":
            converted.append(ToolMessage(content=content, tool_call_id=m.get("tool_call_id", "")))
        else:
            converted.append(HumanMessage(content=content))
    return converted


def to_langchain_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Dispatcher schemas → OpenAI function-tool format, which bind_tools accepts."""
    return [{"type": "function", "function": t} for t in tools]


def from_ai_message(message: Any) -> str | dict[str, Any]:
    """AIMessage → plain string, or {content, tool_calls} when tools were called."""
    content = getattr(message, "content", message)
    if isinstance(content, list):
        content = "".join(
            part.get("text", "") if isinstance(part, dict) else str(part) for part in content
        )
    tool_calls = getattr(message, "tool_calls", None) or []
    if not tool_calls:
        return content if isinstance(content, str) else str(content)
    return {
        "content": content,
        "tool_calls": [
            {"id": c.get("id") or f"call_{i}", "name": c["name"], "arguments": c.get("args") or {}}
            for i, c in enumerate(tool_calls)
        ],
    }


# ═══════════════════════════════════════════════════════════════════════
# call_llm capability
# ═══════════════════════════════════════════════════════════════════════

class ChatModelCaller:
    """
    Callable implementing call_llm over LangChain chat models.

    ``configs`` maps an llm_config_id to ``{provider, model, temperature}``;
    requests without a known id use ``default`` (or auto-detection).
    Models are created lazily and cached per config id.
    """

    def __init__(
        self,
        configs: dict[str, dict[str, Any]] | None = None,
        default: dict[str, Any] | None = None,
        model_factory: Callable[..., BaseChatModel] = create_chat_model,
    ):
        self.configs = configs or {}
        self.default = default or {}
        self._factory = model_factory
        self._models: dict[str, BaseChatModel] = {}
        self._lock = threading.Lock()

    def _model_for(self, llm_config_id: str | None) -> BaseChatModel:
        key = llm_config_id if llm_config_id in self.configs else ""
        with self._lock:
            model = self._models.get(key)
            if model is None:
                entry = self.configs.get(key, self.default) if key else self.default
                model = self._factory(
                    provider=entry.get("provider"),
                    model=entry.get("model"),
                    temperature=float(entry.get("temperature", 0.1)),
                )
                self._models[key] = model
        return model

    def __call__(self, request: dict[str, Any]) -> str | dict[str, Any]:
        model = self._model_for(request.get("llm_config_id"))
        tools = request.get("tools") or []
        runnable = model.bind_tools(to_langchain_tools(tools)) if tools else model
        message = runnable.invoke(to_langchain_messages(request.get("messages") or []))
        return from_ai_message(message)


def create_call_llm(config: dict[str, Any] | None = None) -> ChatModelCaller:
    """Build the call_llm capability from the ``llm`` section of the loaded config."""
    section = (config or {}).get("llm", {}) or {}
    return ChatModelCaller(
        configs=section.get("configs") or {},
        default={k: section[k] for k in ("provider", "model", "temperature") if section.get(k) is not None},
    )
