"""Coding-agent supervision: stream decoding, progress rendering, providers."""

from codebridge.agent.progress import ProgressRenderer, summarize_tool_input
from codebridge.agent.providers import (
    AnthropicProvider,
    GoogleProvider,
    LLMProvider,
    LLMResponse,
    OpenAIProvider,
    TokenUsage,
    create_provider,
)
from codebridge.agent.stream_events import (
    StreamEvent,
    decode_line,
    extract_summary,
    is_session_expired,
)
from codebridge.agent.supervisor import (
    BusyError,
    ExecuteOptions,
    ExecutionResult,
    InvalidWorkingDirectoryError,
    ProcessSupervisor,
    SpawnFailureError,
    SupervisorError,
)

__all__ = [
    "AnthropicProvider",
    "BusyError",
    "ExecuteOptions",
    "ExecutionResult",
    "GoogleProvider",
    "InvalidWorkingDirectoryError",
    "LLMProvider",
    "LLMResponse",
    "OpenAIProvider",
    "ProcessSupervisor",
    "ProgressRenderer",
    "SpawnFailureError",
    "StreamEvent",
    "SupervisorError",
    "TokenUsage",
    "create_provider",
    "decode_line",
    "extract_summary",
    "is_session_expired",
    "summarize_tool_input",
]
