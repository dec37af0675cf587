from atende.services.tools.base import (
    Attachment,
    ToolContext,
    ToolName,
    ToolResult,
    VerificationFollowUp,
)
from atende.services.tools.registry import TOOLS, ToolSpec, execute_tool, tool_definitions

__all__ = [
    "Attachment",
    "ToolContext",
    "ToolName",
    "ToolResult",
    "VerificationFollowUp",
    "TOOLS",
    "ToolSpec",
    "execute_tool",
    "tool_definitions",
]
