from toolrelay.config import ProviderConfig, ServerSettings, select_provider
from toolrelay.errors import (
    ConfigurationError,
    ConversationError,
    ErrorKind,
    ProviderError,
    ToolArgumentsError,
    ToolExecutionError,
    ToolRelayError,
)
from toolrelay.events import (
    DoneEvent,
    ErrorEvent,
    StreamEvent,
    TokenEvent,
    ToolResultEvent,
    ToolUseEvent,
)
from toolrelay.instrumentation import instrument, uninstrument
from toolrelay.message import (
    Conversation,
    Message,
    MessageRole,
    ToolCallRequest,
    ToolCallRequestMessage,
    ToolCallResultMessage,
)
from toolrelay.orchestrator import (
    OrchestrationResult,
    Orchestrator,
    OrchestratorState,
)
from toolrelay.provider import (
    AnthropicProvider,
    ModelProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    OpenRouter,
)
from toolrelay.streaming import (
    InvocationStatus,
    StopReason,
    StreamChunk,
    StreamStop,
    TextDelta,
    ToolCallArgumentFragment,
    ToolCallParametersComplete,
    ToolCallStart,
    ToolInvocation,
)
from toolrelay.tools import (
    DispatchResult,
    Tool,
    ToolDispatcher,
    ToolExecutor,
    tool,
)

__all__ = [
    "AnthropicProvider",
    "ConfigurationError",
    "Conversation",
    "ConversationError",
    "DispatchResult",
    "DoneEvent",
    "ErrorEvent",
    "ErrorKind",
    "InvocationStatus",
    "Message",
    "MessageRole",
    "ModelProvider",
    "OpenAICompatibleProvider",
    "OpenAIProvider",
    "OpenRouter",
    "OrchestrationResult",
    "Orchestrator",
    "OrchestratorState",
    "ProviderConfig",
    "ProviderError",
    "ServerSettings",
    "StopReason",
    "StreamChunk",
    "StreamEvent",
    "StreamStop",
    "TextDelta",
    "TokenEvent",
    "Tool",
    "ToolArgumentsError",
    "ToolCallArgumentFragment",
    "ToolCallParametersComplete",
    "ToolCallRequest",
    "ToolCallRequestMessage",
    "ToolCallResultMessage",
    "ToolCallStart",
    "ToolDispatcher",
    "ToolExecutionError",
    "ToolExecutor",
    "ToolInvocation",
    "ToolRelayError",
    "ToolResultEvent",
    "ToolUseEvent",
    "instrument",
    "select_provider",
    "tool",
    "uninstrument",
]
