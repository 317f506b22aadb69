"""
Relay - Engine Package

Lazy-loading module: LangChain is only imported when an LLM symbol is
actually used, so the coordinator, the API and the tests can import the
graph runner without a model provider installed.

Light imports (no LangChain dependency):
  - engine.state: Graph, Node, Edge, TrailStep, ResumeCursor, RunStatus
  - engine.tools: ToolDispatcher, ToolContext, ToolExecutionError
  - engine.references: resolve_references
  - engine.outcomes: is_failure, get_turn_status
  - engine.stepper: GraphStepper, StepOutcome

Heavy imports (require langchain-core):
  - engine.llm: create_chat_model, ChatModelCaller, create_call_llm
"""

# Light imports — always available
from engine.state import (
    Graph, Node, Edge, TrailStep, ResumeCursor, RunStatus,
    GraphConfigError, validate_graph,
    RUN_CANCELLED_MESSAGE,
)
from engine.tools import ToolDispatcher, ToolContext, ToolExecutionError
from engine.builtin_tools import register_builtin_tools
from engine.references import resolve_references
from engine.outcomes import is_failure, get_turn_status, has_waiting_for_input
from engine.stepper import GraphStepper, StepOutcome


def __getattr__(name):
    """Lazy-load symbols that require LangChain."""
    _llm_symbols = {"create_chat_model", "ChatModelCaller", "create_call_llm"}
    if name in _llm_symbols:
        import engine.llm as _llm
        return getattr(_llm, name)

    raise AttributeError(f"module 'engine' has no attribute {name!r}")
