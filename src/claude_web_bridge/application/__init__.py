"""Application layer."""

from claude_web_bridge.application.models import (
    ChatRequest,
    PermissionMode,
    StreamEvent,
    ToolResultContent,
)
from claude_web_bridge.application.registry import (
    DuplicateRequestError,
    RequestRegistry,
)
from claude_web_bridge.application.runner import AgentSessionRunner

__all__ = [
    "AgentSessionRunner",
    "ChatRequest",
    "DuplicateRequestError",
    "PermissionMode",
    "RequestRegistry",
    "StreamEvent",
    "ToolResultContent",
]
